from __future__ import annotations

import json
from pathlib import Path

import pytest

from skr.oci import ANNOTATION_DEPENDENCIES
from skr.store import Store


def write_skill(root: Path, name: str, *, description: str = "demo skill", dependencies=None, extra: str = "") -> Path:
    skill_dir = root / name
    skill_dir.mkdir(parents=True, exist_ok=True)
    lines = ["---", f"name: {name}"]
    if description:
        lines.append(f"description: \"{description}\"")
    if dependencies:
        lines.append("dependencies:")
        lines.extend(f"  - {dep}" for dep in dependencies)
    lines.extend(["metadata:", "  author: Jane Doe", "  version: 1.0.0", "---", "", f"# {name}", extra])
    (skill_dir / "SKILL.md").write_text("\n".join(lines) + "\n", encoding="utf-8")
    return skill_dir


@pytest.fixture()
def store(tmp_path: Path) -> Store:
    return Store(str(tmp_path / "store"))


@pytest.fixture()
def make_skill(tmp_path: Path):
    src_root = tmp_path / "src"

    def _make(name: str, **kwargs) -> Path:
        return write_skill(src_root, name, **kwargs)

    return _make


@pytest.fixture()
def publish(store: Store, make_skill):
    """Build a skill directory and tag it, with dependencies as annotations."""

    def _publish(reference: str, name: str | None = None, dependencies=None, **kwargs):
        skill_name = name or reference.rsplit("/", 1)[-1].split(":", 1)[0]
        skill_dir = make_skill(skill_name, **kwargs)
        annotations = {}
        if dependencies:
            annotations[ANNOTATION_DEPENDENCIES] = json.dumps(dependencies)
        return store.build(str(skill_dir), reference, annotations)

    return _publish
