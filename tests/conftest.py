import os
import sys

import pytest

_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from download_info import ProjectSpec
from index_json import EntryMeta, FetchError

STORE_URL = "http://store.example"


def d() -> EntryMeta:
    return EntryMeta("dir")


def f(path: str, size: int = 1024) -> EntryMeta:
    return EntryMeta("file", static_link=f"{STORE_URL}/{path}", size=size)


class FakeStore:
    """
    In-memory stand-in for IndexFetcher. Unknown paths fail like a 404 would,
    so fetching a directory the harvester should have skipped breaks the test.
    """

    def __init__(self, listings: dict[str, dict[str, EntryMeta]]) -> None:
        self.listings = listings
        self.calls: list[str] = []

    def __call__(self, relative_path: str) -> dict[str, EntryMeta]:
        self.calls.append(relative_path)
        try:
            return dict(self.listings[relative_path])
        except KeyError:
            raise FetchError(f"{STORE_URL}/{relative_path}/index.json", "404 Not Found")


def riak_listings() -> dict[str, dict[str, EntryMeta]]:
    deb7 = "riak/2.0/2.0.7/debian/7"
    deb8 = "riak/2.0/2.0.7/debian/8"
    el6 = "riak/2.0/2.0.7/rhel/6"
    return {
        "riak": {"2.0": d(), "CURRENT": d(), "1.9": d(), "index.html": f("riak/index.html")},
        "riak/2.0": {"2.0.7": d(), "2.0.6": d(), "CURRENT": d()},
        "riak/2.0/2.0.7": {
            "riak-2.0.7.tar.gz": f("riak/2.0/2.0.7/riak-2.0.7.tar.gz", 12345),
            "debian": d(),
            "rhel": d(),
            "CURRENT": d(),
        },
        "riak/2.0/2.0.7/debian": {"7": d(), "8": d(), "CURRENT": d()},
        deb7: {
            "riak_2.0.7-1_amd64.deb": f(f"{deb7}/riak_2.0.7-1_amd64.deb", 63146820),
            "riak_2.0.7-1_amd64.deb.sha": f(f"{deb7}/riak_2.0.7-1_amd64.deb.sha", 41),
        },
        deb8: {
            "riak_2.0.7-1_i386.deb": f(f"{deb8}/riak_2.0.7-1_i386.deb", 60000000),
            "riak_2.0.7-1_amd64.deb": f(f"{deb8}/riak_2.0.7-1_amd64.deb", 63146820),
            "CURRENT": d(),
        },
        "riak/2.0/2.0.7/rhel": {"6": d()},
        el6: {
            "riak-2.0.7-1.el6.x86_64.rpm": f(f"{el6}/riak-2.0.7-1.el6.x86_64.rpm", 50000000),
            "riak-2.0.7-1.el6.src.rpm": f(f"{el6}/riak-2.0.7-1.el6.src.rpm", 9000000),
        },
        "riak/2.0/2.0.6": {
            "riak-2.0.6.tar.gz": f("riak/2.0/2.0.6/riak-2.0.6.tar.gz", 12000),
        },
    }


@pytest.fixture
def store() -> FakeStore:
    return FakeStore(riak_listings())


@pytest.fixture
def riak_project() -> ProjectSpec:
    return ProjectSpec("riak_kv", "riak", 2.0)
