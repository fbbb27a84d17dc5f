"""
Skill installation.

Materialises resolved artifacts from the store onto the filesystem:
resolve dependencies, refresh mutable tags, unpack the single layer into a
staging directory and swap it into ``<install_root>/<name>``.
"""

import fnmatch
import logging
import os
import shutil
import tarfile
import tempfile

from . import skill as skill_mod
from .config import config
from .errors import (
    ArchiveSafetyError,
    InvalidReferenceError,
    NotFoundError,
    SchemaViolationError,
    SkrError,
    StoreIOError,
    check_cancelled,
)
from .resolver import Resolver
from .validation import parse_reference

logger = logging.getLogger(__name__)


class MutableTagPolicy:
    """
    Decides which references are always refreshed from the remote.

    A reference is mutable when its tag matches one of the fnmatch
    ``patterns``. Digest references are never mutable.
    """

    def __init__(self, patterns=None):
        self.patterns = list(config.MUTABLE_TAGS if patterns is None else patterns)

    def is_mutable(self, reference: str) -> bool:
        try:
            ref = parse_reference(reference)
        except InvalidReferenceError:
            return False
        if ref.digest or not ref.tag:
            return False
        return any(fnmatch.fnmatchcase(ref.tag, pattern) for pattern in self.patterns)

    def __call__(self, reference: str) -> bool:
        return self.is_mutable(reference)


def _is_within(root: str, path: str) -> bool:
    root = os.path.realpath(root)
    return os.path.commonpath([root, os.path.realpath(path)]) == root


def unpack_layer(stream, dest: str, cancel=None) -> None:
    """
    Extract a gzip-compressed tar stream into ``dest``.

    Every member is checked before anything is written for it: absolute
    names, names escaping ``dest`` and links pointing outside ``dest`` raise
    ArchiveSafetyError. Only directories and regular files are written.

    Raises:
        ArchiveSafetyError: path-escaping entry
        StoreIOError: corrupt archive or write failure
    """
    try:
        with tarfile.open(fileobj=stream, mode="r|gz") as tar:
            for member in tar:
                check_cancelled(cancel)
                name = member.name
                target = os.path.join(dest, name)
                if os.path.isabs(name) or not _is_within(dest, target):
                    raise ArchiveSafetyError(f"tar archive contains unsafe filename: {name}")
                if member.issym() or member.islnk():
                    link_target = os.path.join(os.path.dirname(target), member.linkname)
                    if member.islnk():
                        link_target = os.path.join(dest, member.linkname)
                    if os.path.isabs(member.linkname) or not _is_within(dest, link_target):
                        raise ArchiveSafetyError(f"tar archive contains unsafe link: {name} -> {member.linkname}")
                    logger.debug(f"Skipping link entry {name}")
                    continue

                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                elif member.isfile():
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    source = tar.extractfile(member)
                    with open(target, "wb") as out:
                        shutil.copyfileobj(source, out)
                    os.chmod(target, (member.mode & 0o777) | 0o600)
                else:
                    logger.debug(f"Skipping unsupported entry {name}")
    except (tarfile.TarError, EOFError) as exc:
        raise StoreIOError(f"corrupt layer archive: {exc}") from exc
    except OSError as exc:
        raise StoreIOError(f"failed to unpack layer: {exc}") from exc


def replace_tree(src: str, dst: str) -> None:
    """
    Replace ``dst`` with ``src``, copying when a rename crosses filesystems.

    An existing ``dst`` is moved aside first and restored if the swap fails,
    so a failed install keeps the previous version.
    """
    parent = os.path.dirname(os.path.abspath(dst))
    os.makedirs(parent, exist_ok=True)
    backup = None
    if os.path.lexists(dst):
        backup = tempfile.mkdtemp(prefix=".skr-backup-", dir=parent)
        os.rmdir(backup)
        os.rename(dst, backup)

    try:
        try:
            os.rename(src, dst)
        except OSError:
            logger.debug(f"Rename {src} -> {dst} failed, copying instead")
            shutil.copytree(src, dst, symlinks=True)
            shutil.rmtree(src)
    except OSError:
        if backup is not None:
            if os.path.lexists(dst):
                shutil.rmtree(dst, ignore_errors=True)
            os.rename(backup, dst)
            logger.warning(f"Restored previous installation at {dst}")
        raise

    if backup is not None:
        shutil.rmtree(backup)


class Installer:
    """
    Installs skills and their dependencies from a store.

    Args:
        store: Local Store
        puller: Optional callable ``(reference, cancel)`` fetching a reference
            from the remote into the store
        policy: Predicate deciding which references are always refreshed;
            defaults to MutableTagPolicy()
    """

    def __init__(self, store, puller=None, policy=None):
        self.store = store
        self.puller = puller
        self.policy = policy or MutableTagPolicy()

    def install(self, reference: str, install_root: str, cancel=None) -> str:
        """
        Install ``reference`` and everything it depends on.

        Returns:
            The installed name of the root skill
        """
        refs = Resolver(self.store, puller=self.puller).resolve(reference, cancel=cancel)
        root_name = ""
        for i, ref in enumerate(refs):
            name = self.install_one(ref, install_root, cancel=cancel)
            if i == 0:
                root_name = name
        return root_name

    def install_many(self, references, install_root: str, cancel=None) -> tuple:
        """
        Install several references; one failure does not stop the others.

        Returns:
            (installed_names, failures) where failures maps reference to error
        """
        installed, failures = [], {}
        for reference in references:
            try:
                installed.append(self.install(reference, install_root, cancel=cancel))
            except SkrError as exc:
                logger.error(f"Failed to install {reference}: {exc}")
                failures[reference] = exc
        return installed, failures

    def _local_descriptor(self, reference: str, cancel=None):
        try:
            desc = self.store.resolve(reference)
        except NotFoundError:
            desc = None

        if desc is not None and not self.policy(reference):
            return desc

        if self.puller is None:
            if desc is None:
                raise NotFoundError(f"{reference} not found locally and no remote configured")
            return desc

        logger.info(f"Pulling {reference}")
        try:
            self.puller(reference, cancel)
        except SkrError as exc:
            if desc is None:
                raise
            logger.warning(f"Failed to refresh {reference}, using local copy: {exc}")
            return desc
        return self.store.resolve(reference)

    def install_one(self, reference: str, install_root: str, cancel=None) -> str:
        """
        Install a single artifact without its dependencies.

        Returns:
            The skill name, which is also the directory created under
            ``install_root``

        Raises:
            SchemaViolationError: the manifest does not have exactly one
                layer or the SKILL.md front matter cannot be parsed
            ArchiveSafetyError: the layer contains a path-escaping entry
        """
        desc = self._local_descriptor(reference, cancel)
        manifest = self.store.fetch_manifest(desc)
        if len(manifest.layers) != 1:
            raise SchemaViolationError(f"expected exactly 1 layer in {reference}, got {len(manifest.layers)}")

        os.makedirs(install_root, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=".skr-install-", dir=install_root)
        try:
            with self.store.fetch(manifest.layers[0]) as layer:
                unpack_layer(layer, staging, cancel=cancel)

            try:
                skill = skill_mod.load_unverified(staging)
            except SchemaViolationError as exc:
                raise SchemaViolationError(f"{reference} is not a recognizable skill: {exc}") from exc

            try:
                skill.validate()
            except SchemaViolationError as exc:
                logger.warning(f"Installed skill '{skill.name}' has validation issues: {exc}")

            if not skill.name or os.sep in skill.name or skill.name in (".", ".."):
                raise SchemaViolationError(f"{reference} has an unusable skill name {skill.name!r}")

            check_cancelled(cancel)
            target = os.path.join(install_root, skill.name)
            replace_tree(staging, target)
        except OSError as exc:
            raise StoreIOError(f"failed to install {reference}: {exc}") from exc
        finally:
            if os.path.exists(staging):
                shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Installed {reference} as {skill.name}")
        return skill.name


def remove(name: str, install_root: str) -> None:
    """Delete an installed skill directory."""
    target = os.path.join(install_root, name)
    if not _is_within(install_root, target) or os.path.realpath(target) == os.path.realpath(install_root):
        raise InvalidReferenceError(f"invalid skill name {name!r}")
    if not os.path.isdir(target):
        raise NotFoundError(f"skill {name} is not installed in {install_root}")
    shutil.rmtree(target)
    logger.info(f"Removed {target}")


def list_installed(install_root: str) -> list:
    """
    Skills installed under ``install_root``, sorted by name.

    Directories without a readable SKILL.md are skipped with a warning.
    """
    if not os.path.isdir(install_root):
        return []
    skills = []
    for entry in sorted(os.listdir(install_root)):
        path = os.path.join(install_root, entry)
        if entry.startswith(".") or not os.path.isdir(path):
            continue
        try:
            skills.append(skill_mod.load_unverified(path))
        except SchemaViolationError as exc:
            logger.warning(f"Ignoring {path}: {exc}")
    return skills
