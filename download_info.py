#!/usr/bin/env python3
"""
Download info generator.

Walks the index.json listings of the downloads store and produces a single
YAML document describing every downloadable package, in the form

    <project_designation>:
      <full_version>:
        - os: <os_name>
          versions:
            - version: <os_version>
              architectures:
                - arch: <arch>
                  file_info:
                    file_name: <package_name>
                    file_href: <package_url>
                    file_size: <package_size>
                    chksum_href: <package_sha_url>   # only if a .sha exists
        - os: source
          file_info:
            file_name: <tarball_name>
            file_href: <tarball_url>
            file_size: <tarball_size>

The store is laid out as
<root>/<major_version>/<full_version>/<os>/<os_version>/<package>.
"""
import logging
import math
import os
import re
import sys
import tomllib
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Generator, Optional, Union

import click
import yaml
from tqdm import tqdm

from index_json import ConfigError, DownloadInfoError, EntryMeta, IndexFetcher

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s (%(filename)s:%(lineno)d)"
logger = logging.getLogger("download_info")

BASE_URL = os.getenv(
    "TUNASYNC_UPSTREAM_URL", "http://s3.amazonaws.com/downloads.basho.com"
)
WORKING_DIR = os.getenv("TUNASYNC_WORKING_DIR", ".")
DEFAULT_OUTPUT = Path("data") / "download_info.yaml"
WORKERS = int(os.environ.get("DOWNLOAD_INFO_WORKERS", "1"))

CURRENT = "CURRENT"
SOURCE_OS = "source"
UNKNOWN_ARCH = "unknown"
CHECKSUM_SUFFIX = ".sha"
MAJOR_VERSION_RE = re.compile(r"\d+(\.\d+)?", re.ASCII)

# first match wins, some names carry more than one marker
ARCH_PATTERNS = (
    ("amd64", "amd64"),
    ("x86_64", "x86_64"),
    ("i386_64", "i386_64"),
    ("i386", "i386"),
    ("src", "source"),
    (".txz", "txz"),
)

Listing = dict[str, EntryMeta]
Fetcher = Callable[[str], Listing]


@dataclass
class ProjectSpec:
    designation: str
    root: str
    min_major_version: float

    def __post_init__(self) -> None:
        if isinstance(self.min_major_version, bool):
            raise ConfigError(
                f"{self.designation}: min_major_version must be a number"
            )
        try:
            self.min_major_version = float(self.min_major_version)
        except (TypeError, ValueError):
            raise ConfigError(
                f"{self.designation}: min_major_version {self.min_major_version!r} is not a number"
            ) from None
        if not math.isfinite(self.min_major_version):
            raise ConfigError(
                f"{self.designation}: min_major_version must be finite"
            )


# Keys are the project designations used downstream, roots are the top level
# directories in the store.
PROJECTS_TO_TRACK = (
    ProjectSpec("riak_kv", "riak", 2.0),
    ProjectSpec("riak_cs", "riak-cs", 2.0),
    ProjectSpec("stanchion", "stanchion", 2.0),
    ProjectSpec("riak_cs_control", "riak-cs-control", 1.0),
    ProjectSpec("dataplatform", "data-platform", 1.0),
    ProjectSpec("dataplatform_extras", "data-platform-extras", 1.0),
    ProjectSpec("riak_ts", "riak_ts", 1.2),
)


@dataclass
class FileInfo:
    file_name: str
    file_href: Optional[str]
    file_size: Optional[int]
    chksum_href: Optional[str] = None

    @classmethod
    def from_entry(cls, name: str, meta: EntryMeta) -> "FileInfo":
        return cls(file_name=name, file_href=meta.static_link, file_size=meta.size)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "file_name": self.file_name,
            "file_href": self.file_href,
            "file_size": self.file_size,
        }
        if self.chksum_href is not None:
            d["chksum_href"] = self.chksum_href
        return d


@dataclass
class ArchEntry:
    arch: str
    file_info: FileInfo

    def to_dict(self) -> dict[str, Any]:
        return {"arch": self.arch, "file_info": self.file_info.to_dict()}


@dataclass
class OsVersionEntry:
    version: str
    architectures: list[ArchEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "architectures": [a.to_dict() for a in self.architectures],
        }


@dataclass
class SourceEntry:
    file_info: FileInfo
    os: str = field(default=SOURCE_OS, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"os": self.os, "file_info": self.file_info.to_dict()}


@dataclass
class OsEntry:
    os: str
    versions: list[OsVersionEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"os": self.os, "versions": [v.to_dict() for v in self.versions]}


VersionContents = list[Union[SourceEntry, OsEntry]]
ProjectContents = dict[str, VersionContents]


def load_projects(config_path: Union[str, Path]) -> list[ProjectSpec]:
    """
    Read the tracked project table from a TOML file:

        [projects.riak_kv]
        root = "riak"
        min_major_version = 2.0
    """
    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"cannot parse {config_path}: {e}") from e
    table = data.get("projects")
    if not isinstance(table, dict) or not table:
        raise ConfigError(f"{config_path} has no [projects] table")

    projects = []
    for designation, options in table.items():
        if not isinstance(options, dict):
            raise ConfigError(f"{designation}: expected a table")
        try:
            root = options["root"]
            min_major_version = options["min_major_version"]
        except KeyError as e:
            raise ConfigError(f"{designation}: missing {e.args[0]}") from e
        projects.append(ProjectSpec(designation, root, min_major_version))
    logger.info("Read %d projects from %s", len(projects), config_path)
    return projects


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts)


def listing_dirs(listing: Listing) -> list[str]:
    return [k for k, v in listing.items() if v.is_dir and k != CURRENT]


def listing_files(listing: Listing) -> Listing:
    return {k: v for k, v in listing.items() if v.is_file}


def parse_major_version(key: str) -> Optional[float]:
    if not MAJOR_VERSION_RE.fullmatch(key):
        return None
    return float(key)


def select_major_versions(listing: Listing, project: ProjectSpec) -> list[str]:
    majors = []
    for key in listing_dirs(listing):
        value = parse_major_version(key)
        if value is None:
            logger.warning(
                "%s: skipping %r, not a major version number", project.designation, key
            )
            continue
        if value >= project.min_major_version:
            majors.append(key)
        else:
            logger.debug(
                "%s: skipping %s < %s", project.designation, key, project.min_major_version
            )
    return majors


def infer_arch(file_name: str) -> str:
    for marker, arch in ARCH_PATTERNS:
        if marker in file_name:
            return arch
    return UNKNOWN_ARCH


def is_checksum_file(file_name: str) -> bool:
    # matches anywhere in the name, not only as a suffix
    return CHECKSUM_SUFFIX in file_name


def harvest_packages(listing: Listing) -> list[ArchEntry]:
    packages = listing_files(listing)
    architectures = []
    for name, meta in packages.items():
        if is_checksum_file(name):
            continue
        file_info = FileInfo.from_entry(name, meta)
        chksum = packages.get(name + CHECKSUM_SUFFIX)
        if chksum is not None:
            file_info.chksum_href = chksum.static_link
        architectures.append(ArchEntry(infer_arch(name), file_info))
    return architectures


def harvest_os(fetch: Fetcher, version_path: str, os_name: str) -> OsEntry:
    os_path = join_path(version_path, os_name)
    entry = OsEntry(os_name)
    for os_version in listing_dirs(fetch(os_path)):
        architectures = harvest_packages(fetch(join_path(os_path, os_version)))
        entry.versions.append(OsVersionEntry(os_version, architectures))
    return entry


def harvest_version(fetch: Fetcher, version_path: str) -> VersionContents:
    """
    A full version directory holds the source tarballs next to one directory
    per operating system. Sources come first, each as its own entry.
    """
    listing = fetch(version_path)
    os_list: VersionContents = [
        SourceEntry(FileInfo.from_entry(name, meta))
        for name, meta in listing_files(listing).items()
    ]
    for os_name in listing_dirs(listing):
        os_list.append(harvest_os(fetch, version_path, os_name))
    return os_list


def harvest_project(
    fetch: Fetcher, project: ProjectSpec, workers: int = 1
) -> ProjectContents:
    logger.info("Harvesting %s from %s", project.designation, project.root)
    version_paths: list[tuple[str, str]] = []
    for major in select_major_versions(fetch(project.root), project):
        major_path = join_path(project.root, major)
        for version in listing_dirs(fetch(major_path)):
            version_paths.append((version, join_path(major_path, version)))

    def job(item: tuple[str, str]) -> VersionContents:
        return harvest_version(fetch, item[1])

    progress: dict[str, Any] = dict(
        total=len(version_paths), desc=project.designation, disable=None
    )
    if workers > 1:
        # map() hands results back in submission order
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(tqdm(executor.map(job, version_paths), **progress))
    else:
        results = [job(item) for item in tqdm(version_paths, **progress)]

    return {version: os_list for (version, _), os_list in zip(version_paths, results)}


def sort_version_contents(os_list: VersionContents) -> VersionContents:
    def os_key(entry: Union[SourceEntry, OsEntry]) -> tuple[str, str]:
        if isinstance(entry, SourceEntry):
            return (entry.os, entry.file_info.file_name)
        return (entry.os, "")

    for entry in os_list:
        if isinstance(entry, OsEntry):
            entry.versions.sort(key=lambda v: v.version)
            for os_version in entry.versions:
                os_version.architectures.sort(
                    key=lambda a: (a.arch, a.file_info.file_name)
                )
    return sorted(os_list, key=os_key)


def harvest(
    projects: list[ProjectSpec],
    fetch: Fetcher,
    workers: int = 1,
    sort: bool = False,
) -> dict[str, ProjectContents]:
    result: dict[str, ProjectContents] = {}
    for project in projects:
        contents = harvest_project(fetch, project, workers)
        if sort:
            contents = {k: sort_version_contents(v) for k, v in contents.items()}
        result[project.designation] = contents
    return result


def to_document(harvested: dict[str, ProjectContents]) -> dict[str, Any]:
    return {
        designation: {
            version: [entry.to_dict() for entry in os_list]
            for version, os_list in versions.items()
        }
        for designation, versions in harvested.items()
    }


def dump_document(document: dict[str, Any]) -> str:
    return yaml.dump(
        document, default_flow_style=False, sort_keys=False, explicit_start=True
    )


@contextmanager
def overwrite(
    file_path: Path, mode: str = "w", tmp_suffix: str = ".tmp"
) -> Generator[IO[Any], None, None]:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.parent / (file_path.name + tmp_suffix)
    try:
        with open(tmp_path, mode) as tmp_file:
            yield tmp_file
        tmp_path.replace(file_path)
    finally:
        tmp_path.unlink(missing_ok=True)


def generate_download_info(
    projects: list[ProjectSpec],
    fetch: Fetcher,
    output: Path,
    workers: int = 1,
    sort: bool = False,
) -> dict[str, Any]:
    # build everything first, a failed fetch must leave the old file alone
    document = to_document(harvest(projects, fetch, workers=workers, sort=sort))
    contents = dump_document(document)

    logger.info('Opening "%s" for writing', output)
    with overwrite(output) as f:
        f.write(contents)
    logger.info("Download data generation complete!")
    return document


@click.command(
    help="Generate the download info YAML from the downloads store. "
    "Runs with no arguments; every option is optional and only overrides "
    "the built-in project table or the TUNASYNC_* environment."
)
@click.option("--base-url", default=BASE_URL, show_default=True, help="Store base URL")
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"Output YAML file, defaults to {DEFAULT_OUTPUT} under TUNASYNC_WORKING_DIR",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    envvar="DOWNLOAD_INFO_CONFIG",
    help="TOML file with the [projects] table to track instead of the built-in "
    "PROJECTS_TO_TRACK (env: DOWNLOAD_INFO_CONFIG)",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=WORKERS,
    show_default=True,
    help="Number of versions harvested concurrently",
)
@click.option(
    "--sort/--no-sort",
    default=False,
    help="Sort os/version/arch lists instead of keeping upstream order",
)
def cli(
    base_url: str,
    output: Optional[Path],
    config: Optional[str],
    workers: int,
    sort: bool,
) -> None:
    log_level = logging.DEBUG if os.environ.get("DEBUG") else logging.INFO
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    if output is None:
        output = Path(WORKING_DIR) / DEFAULT_OUTPUT

    try:
        projects = load_projects(config) if config else list(PROJECTS_TO_TRACK)
        generate_download_info(
            projects, IndexFetcher(base_url), output, workers=workers, sort=sort
        )
    except DownloadInfoError as e:
        logger.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    cli()
