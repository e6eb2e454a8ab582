#!/usr/bin/env python3
"""
APT Repository Builder

Builds the metadata of a Debian-style APT repository from a pool of .deb files:
per-architecture Packages and Contents indices, the top-level Release manifest
and its InRelease / Release.gpg signatures. Serve the result with any static
HTTP server.
"""

import argparse
import bz2
import gzip
import hashlib
import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

import yaml


logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".deb"
DISTS_DIR = "dists"
COMPONENT = "main"
ARCH_ALL = "all"

TOOL_TIMEOUT = 120
GPG_TIMEOUT = 60

HASH_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")

# Release checksum blocks, in the order APT expects them
RELEASE_CHECKSUM_BLOCKS = {
    "MD5Sum": "md5",
    "SHA1": "sha1",
    "SHA256": "sha256",
    "SHA512": "sha512",
}

# Checksum fields of a Packages paragraph
PACKAGE_CHECKSUM_FIELDS = {
    "MD5sum": "md5",
    "SHA1": "sha1",
    "SHA256": "sha256",
    "SHA512": "sha512",
}

CANONICAL_FIELD_ORDER = [
    "Package",
    "Priority",
    "Section",
    "Installed-Size",
    "Maintainer",
    "Architecture",
    "Source",
    "Version",
    "Provides",
    "Depends",
    "Breaks",
    "Recommends",
    "Suggests",
    "Filename",
    "Size",
    "MD5sum",
    "SHA1",
    "SHA256",
    "SHA512",
    "Description",
    "Homepage",
]

REQUIRED_RECORD_FIELDS = ("Filename", "Size", *PACKAGE_CHECKSUM_FIELDS)

RELEASE_DESCRIPTION = "Generated by apt-buildrepo"
CONTENTS_HEADER = "FILE LOCATION"
SIGNATURE_FILES = ("InRelease", "Release.gpg")


class RepoError(Exception):
    """Base class for errors that abort a repository build."""


class FilesystemError(RepoError):
    """A path could not be read, written or listed."""


class ArchiveUnreadable(FilesystemError):
    """A package archive could not be opened."""


class ToolError(RepoError):
    """An external tool failed or produced output we cannot use."""


class UnknownMetadataFormat(RepoError):
    """The control block of an archive contained an unrecognised line."""


class SigningError(RepoError):
    """gpg failed to sign the Release file."""


@dataclass(frozen=True)
class RepoConfig:
    """Repository settings for one build run."""
    root: Path
    codename: str
    pool: str = "pool"
    suite: str = ""
    origin: str = ""
    label: str = ""
    key_id: str = ""
    passphrase_file: Optional[Path] = None
    key_file: Optional[Path] = None
    jobs: int = 1

    def __post_init__(self):
        if not self.codename:
            raise ValueError("A codename is required")
        object.__setattr__(self, "root", Path(self.root))
        if not self.suite:
            object.__setattr__(self, "suite", self.codename)

    @property
    def pool_dir(self) -> Path:
        return self.root / self.pool

    @property
    def dists_dir(self) -> Path:
        return self.root / DISTS_DIR

    @property
    def dist_dir(self) -> Path:
        return self.dists_dir / self.codename

    @property
    def component_dir(self) -> Path:
        return self.dist_dir / COMPONENT


def load_config(config_path: Optional[Path] = None, **overrides) -> RepoConfig:
    """Load repository settings from a YAML file.

    The file holds a top-level ``repository`` mapping with the same keys as
    RepoConfig. Overrides that are not None or empty take precedence, which is
    how command-line options win over the file.
    """
    settings: dict = {}
    if config_path is not None:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict) or not isinstance(data.get("repository", {}), dict):
            raise ValueError(f"{config_path}: expected a 'repository' mapping")
        settings = dict(data.get("repository") or {})

    known = {f.name for f in dataclass_fields(RepoConfig)}
    unknown = set(settings) - known
    if unknown:
        raise ValueError(f"Unknown repository settings: {', '.join(sorted(unknown))}")

    settings.update({k: v for k, v in overrides.items() if v is not None and v != ""})

    for key in ("root", "codename"):
        if not settings.get(key):
            raise ValueError(f"Missing required setting: {key}")
    for key in ("root", "passphrase_file", "key_file"):
        if settings.get(key):
            settings[key] = Path(settings[key])
    settings["jobs"] = int(settings.get("jobs", 1))

    return RepoConfig(**settings)


class ChecksumProvider:
    """Memoized digests of a single file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._cache: dict[str, str] = {}

    def digest(self, algorithm: str) -> str:
        """Hex digest of the file for a hashlib algorithm name."""
        if algorithm not in self._cache:
            self._compute([algorithm])
        return self._cache[algorithm]

    def digests(self) -> dict[str, str]:
        """All repository digests, computed in a single read pass."""
        missing = [a for a in HASH_ALGORITHMS if a not in self._cache]
        if missing:
            self._compute(missing)
        return {a: self._cache[a] for a in HASH_ALGORITHMS}

    def _compute(self, algorithms: list[str]) -> None:
        try:
            hashers = {a: hashlib.new(a) for a in algorithms}
        except ValueError as e:
            raise ToolError(f"Cannot compute digest of {self.path}: {e}") from e

        try:
            with open(self.path, "rb") as f:
                while chunk := f.read(65536):
                    for hasher in hashers.values():
                        hasher.update(chunk)
        except OSError as e:
            raise FilesystemError(f"Cannot read {self.path}: {e}") from e

        for algorithm, hasher in hashers.items():
            self._cache[algorithm] = hasher.hexdigest()


@dataclass
class PackageRecord:
    """One scanned .deb: control fields, checksums and installed files."""
    archive_path: Path
    fields: dict[str, str] = field(default_factory=dict)
    contents: list[str] = field(default_factory=list)

    @property
    def architecture(self) -> str:
        return self.fields.get("Architecture", "")

    @property
    def name(self) -> str:
        return self.fields.get("Package", "")

    @property
    def location(self) -> str:
        """Contents location of this package, ``<Section>/<Package>``."""
        section = self.fields.get("Section")
        return f"{section}/{self.name}" if section else self.name

    def set_filename(self, filename: str) -> None:
        self.fields["Filename"] = filename

    def require_complete(self) -> None:
        missing = [name for name in REQUIRED_RECORD_FIELDS if not self.fields.get(name)]
        if missing:
            raise RepoError(f"{self.archive_path}: package record lacks {', '.join(missing)}")


# Control parsing

FIELD_RE = re.compile(r"^(?P<name>[^\s:#-][^\s:]*):[ \t]*(?P<value>.*)$")

# Informational lines dpkg-deb --info prints before the control file
INFO_BANNER_RES = (
    re.compile(r"^(new|old) Debian package, version \S+\.$"),
    re.compile(r"^size \d+ bytes: control archive=\d+ bytes\.$"),
    re.compile(r"^\s*\d+ bytes,\s+\d+ lines?\s.*$"),
)

LISTING_RE = re.compile(
    r"^(?P<mode>[-dlhcbps][-rwxsStT]{9})\s+(?P<owner>\S+)\s+(?P<size>\d+)\s+"
    r"(?P<date>\d{4}-\d{2}-\d{2})\s+(?P<time>\d{2}:\d{2}(?::\d{2})?)\s(?P<path>.+)$"
)


def parse_control(lines: Iterable[str], source: object = "control") -> dict[str, str]:
    """Parse one control paragraph into an ordered field mapping.

    ``Name: value`` starts a field. A line starting with a space continues
    the current field: it is appended after a newline with that one space
    removed. Anything else raises UnknownMetadataFormat.
    """
    fields: dict[str, str] = {}
    current: Optional[str] = None

    for line in lines:
        if not line:
            continue
        match = FIELD_RE.match(line)
        if match:
            current = match.group("name")
            if current in fields:
                raise UnknownMetadataFormat(f"{source}: duplicate field {current!r}")
            fields[current] = match.group("value")
        elif line.startswith(" ") and current is not None:
            fields[current] += "\n" + line[1:]
        else:
            raise UnknownMetadataFormat(f"{source}: unrecognised control line {line!r}")

    return fields


def parse_info_output(text: str, source: object = "dpkg-deb --info") -> dict[str, str]:
    """Parse the output of ``dpkg-deb --info`` into control fields.

    dpkg-deb indents everything by one space and prints a few banner lines
    before the control file itself; those are only accepted before the first
    field.
    """
    lines = []
    for raw in text.splitlines():
        if not raw.strip():
            continue
        if not raw.startswith(" "):
            raise UnknownMetadataFormat(f"{source}: unrecognised control line {raw!r}")
        line = raw[1:]
        if not lines and any(banner.match(line) for banner in INFO_BANNER_RES):
            continue
        lines.append(line)
    return parse_control(lines, source)


def parse_contents_listing(text: str) -> list[str]:
    """Installed file paths from ``dpkg-deb --contents`` output.

    Directories are dropped and links keep only their own path. Lines that
    do not look like a tar listing are skipped.
    """
    paths = []
    for line in text.splitlines():
        match = LISTING_RE.match(line)
        if not match:
            if line.strip():
                logger.debug("Skipping unparseable listing line: %r", line)
            continue

        path = match.group("path").partition(" -> ")[0]
        if match.group("mode").startswith("h"):
            path = path.partition(" link to ")[0]
        if path.endswith("/"):
            continue

        path = path[2:] if path.startswith("./") else path.lstrip("/")
        if path:
            paths.append(path)

    return paths


class DpkgDeb:
    """Reads the control block and file listing of an archive with dpkg-deb."""

    def __init__(self, executable: str = "dpkg-deb", timeout: int = TOOL_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def info(self, archive: Path) -> str:
        return self._run("--info", archive)

    def contents(self, archive: Path) -> str:
        return self._run("--contents", archive)

    def _run(self, option: str, archive: Path) -> str:
        cmd = [self.executable, option, str(archive)]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                timeout=self.timeout,
                env={**os.environ, "LC_ALL": "C"},
            )
        except FileNotFoundError as e:
            raise ToolError(f"{self.executable} not available: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ToolError(f"{self.executable} {option} timed out on {archive}") from e
        except UnicodeDecodeError as e:
            raise ToolError(f"{self.executable} {option} produced non UTF-8 output for {archive}") from e

        if result.returncode != 0:
            raise ToolError(
                f"{self.executable} {option} failed on {archive}: {result.stderr.strip()}"
            )
        return result.stdout


class PackageInspector:
    """Turns archive paths into fully populated PackageRecords."""

    def __init__(self, tool=None):
        self.tool = tool or DpkgDeb()

    def inspect(self, archive_path: Path) -> PackageRecord:
        archive_path = Path(archive_path)
        try:
            size = archive_path.stat().st_size
            with open(archive_path, "rb"):
                pass
        except OSError as e:
            raise ArchiveUnreadable(f"Cannot open {archive_path}: {e}") from e

        fields = parse_info_output(self.tool.info(archive_path), archive_path)
        for required in ("Package", "Architecture"):
            if not fields.get(required):
                raise ToolError(f"{archive_path}: control block has no {required} field")

        contents = parse_contents_listing(self.tool.contents(archive_path))
        digests = ChecksumProvider(archive_path).digests()

        fields["Filename"] = str(archive_path)
        fields["Size"] = str(size)
        for name, algorithm in PACKAGE_CHECKSUM_FIELDS.items():
            fields[name] = digests[algorithm]

        logger.debug(
            "    %s %s (%s): %d file(s)",
            fields["Package"], fields.get("Version", "?"), fields["Architecture"], len(contents),
        )
        return PackageRecord(archive_path=archive_path, fields=fields, contents=contents)

    def inspect_all(self, archive_paths: list[Path], jobs: int = 1) -> list[PackageRecord]:
        """Inspect every archive; results keep the order of ``archive_paths``."""
        if jobs <= 1:
            return [self.inspect(path) for path in archive_paths]
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            return list(executor.map(self.inspect, archive_paths))


def scan_pool(pool_root: Path, dists_dir: Optional[Path] = None) -> list[Path]:
    """Recursively collect .deb files under pool_root.

    Directories are visited in enumeration order, without sorting.
    ``dists_dir`` holds generated indices and is never entered.
    """
    excluded = Path(dists_dir).resolve() if dists_dir is not None else None
    archives: list[Path] = []
    _walk_pool(Path(pool_root), excluded, archives)
    return archives


def _walk_pool(directory: Path, excluded: Optional[Path], archives: list[Path]) -> None:
    try:
        with os.scandir(directory) as it:
            entries = list(it)
    except OSError as e:
        raise FilesystemError(f"Cannot list directory {directory}: {e}") from e

    for entry in entries:
        path = Path(entry.path)
        if entry.is_dir(follow_symlinks=False):
            if excluded is not None and path.resolve() == excluded:
                continue
            _walk_pool(path, excluded, archives)
        elif entry.name.endswith(ARCHIVE_SUFFIX) and entry.is_file():
            if not os.access(path, os.R_OK):
                logger.debug("Skipping unreadable %s", path)
                continue
            archives.append(path)


# Index generation

def render_fields(pairs: Iterable[tuple[str, Optional[str]]]) -> str:
    """Render ``Key: value`` lines, skipping empty values.

    Embedded newlines become continuation lines indented by one space.
    Leading whitespace of the first line is dropped, since a control
    parser cannot tell it apart from the separator after the colon.
    """
    lines = []
    for key, value in pairs:
        if value is None or value == "":
            continue
        first, *rest = str(value).split("\n")
        first = first.lstrip(" \t")
        lines.append(f"{key}: {first}" if first else f"{key}:")
        lines.extend(f" {line}" for line in rest)
    return "\n".join(lines) + "\n"


def render_paragraph(fields: dict[str, str]) -> str:
    """Render a Packages paragraph: canonical fields first, then the rest sorted."""
    keys = [key for key in CANONICAL_FIELD_ORDER if key in fields]
    keys += sorted(key for key in fields if key not in CANONICAL_FIELD_ORDER)
    return render_fields((key, fields[key]) for key in keys)


@dataclass
class ArchitectureIndex:
    """Packages applicable to one concrete architecture, ``all`` included."""
    architecture: str
    records: list[PackageRecord] = field(default_factory=list)

    def packages_text(self) -> str:
        return "\n".join(render_paragraph(record.fields) for record in self.records)

    def contents_text(self) -> str:
        # A path shipped by several packages maps to the last one seen.
        locations: dict[str, str] = {}
        for record in self.records:
            for path in record.contents:
                locations[path] = record.location

        lines = [CONTENTS_HEADER]
        lines.extend(f"{path} {locations[path]}" for path in sorted(locations))
        return "\n".join(lines) + "\n"


def build_indices(records: list[PackageRecord]) -> dict[str, ArchitectureIndex]:
    """Group records by architecture, folding ``all`` into every other one."""
    for record in records:
        record.require_complete()

    architectures = sorted({record.architecture for record in records} - {ARCH_ALL})
    return {
        arch: ArchitectureIndex(
            architecture=arch,
            records=[r for r in records if r.architecture in (arch, ARCH_ALL)],
        )
        for arch in architectures
    }


class GzipCompressor:
    suffix = ".gz"

    def compress(self, data: bytes) -> bytes:
        # mtime=0 keeps the output reproducible
        return gzip.compress(data, compresslevel=9, mtime=0)


class Bzip2Compressor:
    suffix = ".bz2"

    def compress(self, data: bytes) -> bytes:
        return bz2.compress(data, compresslevel=9)


def write_file(path: Path, data: bytes) -> None:
    """Write bytes and flush them to disk."""
    try:
        with open(path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise FilesystemError(f"Cannot write {path}: {e}") from e


def write_compressed(path: Path, compressor) -> Path:
    """Compress the finished file at ``path`` next to it."""
    try:
        data = path.read_bytes()
    except OSError as e:
        raise FilesystemError(f"Cannot read {path}: {e}") from e
    target = path.with_name(path.name + compressor.suffix)
    try:
        compressed = compressor.compress(data)
    except (OSError, ValueError) as e:
        raise ToolError(f"Cannot compress {path} to {target.name}: {e}") from e
    write_file(target, compressed)
    return target


def render_architecture_release(config: RepoConfig, architecture: str) -> str:
    return render_fields([
        ("Origin", config.origin),
        ("Label", config.label),
        ("Archive", config.suite),
        ("Codename", config.codename),
        ("Component", COMPONENT),
        ("Architecture", architecture),
    ])


def write_architecture_index(index: ArchitectureIndex, config: RepoConfig) -> list[Path]:
    """Write all files for one architecture and return their paths."""
    arch = index.architecture
    binary_dir = config.component_dir / f"binary-{arch}"
    try:
        binary_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Cannot create {binary_dir}: {e}") from e

    written = []

    packages = binary_dir / "Packages"
    write_file(packages, index.packages_text().encode("utf-8"))
    written.append(packages)
    for compressor in (GzipCompressor(), Bzip2Compressor()):
        written.append(write_compressed(packages, compressor))

    release = binary_dir / "Release"
    write_file(release, render_architecture_release(config, arch).encode("utf-8"))
    written.append(release)

    contents = config.component_dir / f"Contents-{arch}"
    write_file(contents, index.contents_text().encode("utf-8"))
    written.append(write_compressed(contents, GzipCompressor()))
    try:
        contents.unlink()
    except OSError as e:
        raise FilesystemError(f"Cannot remove {contents}: {e}") from e

    return written


# Release manifest

@dataclass
class IndexFile:
    """Size and digests of one generated file, relative to the Release file."""
    relative_path: str
    size: int
    checksums: dict[str, str]

    @classmethod
    def from_disk(cls, base_dir: Path, path: Path) -> "IndexFile":
        path = Path(path)
        try:
            size = path.stat().st_size
        except OSError as e:
            raise FilesystemError(f"Cannot stat {path}: {e}") from e
        relative = Path(os.path.relpath(path, base_dir)).as_posix()
        return cls(relative_path=relative, size=size, checksums=ChecksumProvider(path).digests())


@dataclass
class Manifest:
    """Top-level Release file."""
    suite: str
    codename: str
    date: datetime
    architectures: list[str] = field(default_factory=list)
    components: list[str] = field(default_factory=list)
    files: list[IndexFile] = field(default_factory=list)
    origin: str = ""
    label: str = ""
    description: str = RELEASE_DESCRIPTION

    def render(self) -> str:
        text = render_fields([
            ("Origin", self.origin),
            ("Label", self.label),
            ("Suite", self.suite),
            ("Codename", self.codename),
            ("Date", self.date.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S UTC")),
            ("Architectures", " ".join(self.architectures)),
            ("Components", " ".join(self.components)),
            ("Description", self.description),
        ])

        files = sorted(self.files, key=lambda f: f.relative_path)
        width = max((len(str(f.size)) for f in files), default=0)
        lines = []
        for block, algorithm in RELEASE_CHECKSUM_BLOCKS.items():
            lines.append(f"{block}:")
            for f in files:
                lines.append(f" {f.checksums[algorithm]} {f.size:>{width}} {f.relative_path}")

        return text + "\n".join(lines) + "\n"


def build_manifest(
    config: RepoConfig,
    architectures: list[str],
    components: list[str],
    index_paths: list[Path],
    now: Optional[datetime] = None,
) -> Manifest:
    """Build the Release manifest, re-reading every index file from disk."""
    base_dir = config.dist_dir
    return Manifest(
        origin=config.origin,
        label=config.label,
        suite=config.suite,
        codename=config.codename,
        date=now or datetime.now(timezone.utc),
        architectures=sorted(architectures),
        components=list(components),
        files=[IndexFile.from_disk(base_dir, path) for path in index_paths],
    )


def write_manifest(manifest: Manifest, release_path: Path) -> None:
    """Write the Release file via a temporary file and rename."""
    tmp_path = release_path.with_name(f".{release_path.name}.tmp")
    write_file(tmp_path, manifest.render().encode("utf-8"))
    try:
        os.replace(tmp_path, release_path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise FilesystemError(f"Cannot write {release_path}: {e}") from e


# Signing

def remove_signatures(dist_dir: Path) -> None:
    """Delete InRelease and Release.gpg if present."""
    for name in SIGNATURE_FILES:
        path = dist_dir / name
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot remove stale {path}: {e}") from e


def remove_release(dist_dir: Path) -> None:
    """Delete the Release file and its signatures before the indices change."""
    remove_signatures(dist_dir)
    path = dist_dir / "Release"
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        raise FilesystemError(f"Cannot remove stale {path}: {e}") from e


class ReleaseSigner:
    """Signs a Release file with gpg, producing InRelease and Release.gpg."""

    def __init__(
        self,
        key_id: str = "",
        passphrase_file: Optional[Path] = None,
        key_file: Optional[Path] = None,
        gpg: str = "gpg",
        runner=subprocess.run,
        timeout: int = GPG_TIMEOUT,
    ):
        self.key_id = key_id
        self.passphrase_file = passphrase_file
        self.key_file = key_file
        self.gpg = gpg
        self.runner = runner
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: RepoConfig, **kwargs) -> "ReleaseSigner":
        return cls(
            key_id=config.key_id,
            passphrase_file=config.passphrase_file,
            key_file=config.key_file,
            **kwargs,
        )

    def sign(self, release_path: Path) -> bool:
        """Sign ``release_path``. Returns False when no key is configured."""
        release_path = Path(release_path)
        dist_dir = release_path.parent
        remove_signatures(dist_dir)

        if not self.key_id:
            logger.info("  No signing key configured, repository is unsigned")
            return False

        inrelease = dist_dir / "InRelease"
        detached = dist_dir / "Release.gpg"
        try:
            with self.keyring() as homedir:
                base = self._gpg_command(homedir) + ["--local-user", self.key_id]
                self._run(
                    base + ["--clearsign", "--output", str(inrelease), str(release_path)],
                    "clear-sign",
                )
                self._run(
                    base + ["--armor", "--detach-sign", "--output", str(detached), str(release_path)],
                    "detach-sign",
                )
        except Exception:
            try:
                remove_signatures(dist_dir)
            except FilesystemError as cleanup_error:
                logger.warning("  Could not remove partial signatures: %s", cleanup_error)
            raise

        logger.info("  Created InRelease and Release.gpg")
        return True

    @contextmanager
    def keyring(self) -> Iterator[Optional[Path]]:
        """Private gpg home holding the imported key, removed on exit.

        Yields None when no key file is configured, so gpg uses the
        caller's default keyring.
        """
        if not self.key_file:
            yield None
            return

        with tempfile.TemporaryDirectory(prefix="apt-buildrepo-gnupg-") as tmpdir:
            homedir = Path(tmpdir)
            try:
                self._run(self._gpg_command(homedir) + ["--import", str(self.key_file)], "key import")
                yield homedir
            finally:
                self._stop_agent(homedir)

    def _gpg_command(self, homedir: Optional[Path]) -> list[str]:
        cmd = [self.gpg, "--batch", "--yes"]
        if homedir is not None:
            cmd.extend(["--homedir", str(homedir)])
        if self.passphrase_file:
            cmd.extend(["--pinentry-mode", "loopback", "--passphrase-file", str(self.passphrase_file)])
        return cmd

    def _run(self, cmd: list[str], action: str) -> None:
        try:
            result = self.runner(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise SigningError(f"{self.gpg} not available: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise SigningError(f"gpg {action} timed out") from e

        if result.returncode != 0:
            raise SigningError(f"gpg {action} failed: {result.stderr.strip()}")

    def _stop_agent(self, homedir: Path) -> None:
        # gpg starts an agent bound to the home directory; stop it before removal
        try:
            self.runner(
                ["gpgconf", "--homedir", str(homedir), "--kill", "gpg-agent"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Could not stop gpg-agent for %s: %s", homedir, e)


# Pipeline

@dataclass
class BuildResult:
    """Summary of a repository build."""
    architectures: list[str]
    package_count: int
    release_path: Path
    signed: bool


def relative_filename(path: Path, root: Path) -> str:
    return Path(os.path.relpath(path, root)).as_posix()


def build_repository(
    config: RepoConfig,
    inspector: Optional[PackageInspector] = None,
    signer: Optional[ReleaseSigner] = None,
    now: Optional[datetime] = None,
) -> BuildResult:
    """Rebuild every index, the Release file and its signatures."""
    inspector = inspector or PackageInspector()
    signer = signer or ReleaseSigner.from_config(config)

    dist_dir = config.dist_dir
    try:
        dist_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Cannot create {dist_dir}: {e}") from e
    remove_signatures(dist_dir)

    logger.info("Scanning %s...", config.pool_dir)
    archives = scan_pool(config.pool_dir, config.dists_dir)
    logger.info("  Found %d package(s)", len(archives))

    records = inspector.inspect_all(archives, jobs=config.jobs)
    for record in records:
        record.set_filename(relative_filename(record.archive_path, config.root))

    indices = build_indices(records)

    # The old Release describes the indices about to be replaced
    remove_release(dist_dir)
    if config.component_dir.exists():
        try:
            shutil.rmtree(config.component_dir)
        except OSError as e:
            raise FilesystemError(f"Cannot clear {config.component_dir}: {e}") from e

    logger.info("Generating indices...")
    index_paths: list[Path] = []
    for arch, index in indices.items():
        logger.info("  %s: %d package(s)", arch, len(index.records))
        index_paths.extend(write_architecture_index(index, config))
    if not indices:
        logger.warning("  No architecture-specific packages found, Release lists no indices")

    manifest = build_manifest(config, list(indices), [COMPONENT], index_paths, now=now)
    release_path = dist_dir / "Release"
    write_manifest(manifest, release_path)
    logger.info("  Created %s", relative_filename(release_path, config.root))

    signed = signer.sign(release_path)

    return BuildResult(
        architectures=list(indices),
        package_count=len(records),
        release_path=release_path,
        signed=signed,
    )


def validate_config(config: RepoConfig) -> list[str]:
    """Problems with the configured paths, empty if none."""
    problems = []
    if not config.root.is_dir():
        problems.append(f"Repository root is not a directory: {config.root}")
    elif not config.pool_dir.is_dir():
        problems.append(f"Pool is not a directory: {config.pool_dir}")
    for label, path in (("Passphrase file", config.passphrase_file), ("Key file", config.key_file)):
        if path is not None and not os.access(path, os.R_OK):
            problems.append(f"{label} is not readable: {path}")
    if (config.passphrase_file or config.key_file) and not config.key_id:
        problems.append("A passphrase or key file was given without a signing key id (-r)")
    if config.jobs < 1:
        problems.append(f"Invalid number of jobs: {config.jobs}")
    return problems


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build APT repository indices and a signed Release file from a pool of .deb files"
    )
    parser.add_argument(
        "root",
        type=Path,
        nargs="?",
        help="Repository root directory",
    )
    parser.add_argument(
        "--config", "-C",
        type=Path,
        help="YAML file with a 'repository' settings mapping",
    )
    parser.add_argument(
        "--codename", "-c",
        help="Distribution codename, e.g. bookworm (required)",
    )
    parser.add_argument(
        "--suite", "-s",
        help="Suite name (defaults to the codename)",
    )
    parser.add_argument(
        "--origin", "-O",
        help="Origin field of the Release file",
    )
    parser.add_argument(
        "--label", "-L",
        help="Label field of the Release file",
    )
    parser.add_argument(
        "--pool", "-p",
        help="Pool directory relative to the root (default: pool)",
    )
    parser.add_argument(
        "--key-id", "-r",
        help="GPG key used for signing; the repository is unsigned without it",
    )
    parser.add_argument(
        "--passphrase-file", "-P",
        type=Path,
        help="File holding the passphrase of the signing key",
    )
    parser.add_argument(
        "--key-file", "-k",
        type=Path,
        help="Secret key to import into a temporary keyring for signing",
    )
    parser.add_argument(
        "--jobs", "-j",
        type=int,
        help="Number of archives to inspect in parallel (default: 1)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show per-package details",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    try:
        config = load_config(
            args.config,
            root=args.root,
            codename=args.codename,
            suite=args.suite,
            origin=args.origin,
            label=args.label,
            pool=args.pool,
            key_id=args.key_id,
            passphrase_file=args.passphrase_file,
            key_file=args.key_file,
            jobs=args.jobs,
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    problems = validate_config(config)
    if problems:
        for problem in problems:
            print(f"Error: {problem}", file=sys.stderr)
        return 2

    try:
        result = build_repository(config)
    except RepoError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\nRepository generated in: {config.root}")
    print(f"Architectures: {' '.join(result.architectures) or '(none)'}")
    print(f"Total packages: {result.package_count}")
    print(f"Signed: {'yes' if result.signed else 'no'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
