#!/usr/bin/env python3
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Optional

import requests

logger = logging.getLogger("download_info")

USER_AGENT = os.getenv(
    "SYNC_USER_AGENT", "download-info (https://github.com/tuna/tunasync-scripts)"
)

# connect and read timeout value
TIMEOUT_OPTION = (7, 10)

LEADING_GARBAGE_RE = re.compile(r"^[^{]+")
LEADING_GARBAGE_NO_OBJECT_RE = re.compile(r"^[^[]+")


class DownloadInfoError(Exception):
    pass


class FetchError(DownloadInfoError):
    verb = "fetch"

    def __init__(self, url: str, reason: Any) -> None:
        super().__init__(f"Failed to {self.verb} {url}: {reason}")
        self.url = url
        self.reason = reason


class ParseError(FetchError):
    verb = "parse"


class MalformedIndexError(DownloadInfoError):
    pass


class ConfigError(DownloadInfoError):
    pass


@dataclass
class EntryMeta:
    type: str
    static_link: Optional[str] = None
    size: Optional[int] = None

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"

    @property
    def is_file(self) -> bool:
        return self.type == "file"

    @classmethod
    def from_json(cls, name: str, meta: Any) -> "EntryMeta":
        if not isinstance(meta, dict):
            raise MalformedIndexError(
                f"entry {name!r} is {type(meta).__name__}, expected an object"
            )
        return cls(
            type=meta.get("type", ""),
            static_link=meta.get("staticLink"),
            size=meta.get("size"),
        )


def unwrap_index_body(body: str) -> str:
    """
    index.json is served as a script snippet, e.g. `var index = {...};`.
    Drop everything before the first brace and the trailing semicolon. A body
    without any brace is cut at the first bracket instead.
    """
    if "{" in body:
        body = LEADING_GARBAGE_RE.sub("", body)
    else:
        body = LEADING_GARBAGE_NO_OBJECT_RE.sub("", body)
    body = body.strip()
    if body.endswith(";"):
        body = body[:-1]
    return body


def parse_index(body: str, url: str = "<memory>") -> dict[str, EntryMeta]:
    try:
        contents = json.loads(unwrap_index_body(body))
    except ValueError as e:
        raise ParseError(url, e) from e
    if not isinstance(contents, dict):
        raise MalformedIndexError(
            f"{url} contains {type(contents).__name__}, expected an object"
        )
    return {name: EntryMeta.from_json(name, meta) for name, meta in contents.items()}


def create_requests_session() -> requests.Session:
    # no retry adapter: a failed index aborts the whole run
    s = requests.Session()
    s.headers.update({"User-Agent": USER_AGENT})
    return s


class IndexFetcher:
    """
    Reads <base_url>/<relative_path>/index.json off the artifact store.

    Instances are plain callables so that the harvester can be handed any
    function taking a relative path and returning a listing.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: tuple[float, float] = TIMEOUT_OPTION,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else create_requests_session()
        self.timeout = timeout

    def index_url(self, relative_path: str) -> str:
        relative_path = relative_path.strip("/")
        if not relative_path:
            return f"{self.base_url}/index.json"
        return f"{self.base_url}/{relative_path}/index.json"

    def __call__(self, relative_path: str) -> dict[str, EntryMeta]:
        logger.info('Indexing "%s"...', relative_path)
        url = self.index_url(relative_path)
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(url, e) from e
        return parse_index(resp.text, url)
