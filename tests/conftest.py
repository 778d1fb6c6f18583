from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
import requests

ORIGIN = "https://www.plesk.com"
PAGE_URL = "https://www.plesk.com/extensions/"


class FakeResponse:
    def __init__(
        self,
        body: Union[bytes, str] = b"",
        status_code: int = 200,
        encoding: Optional[str] = "utf-8",
        drop_after: Optional[int] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status_code = status_code
        self.encoding = encoding
        self.headers: Dict[str, str] = {}
        self.drop_after = drop_after
        self.closed = False

    @property
    def content(self) -> bytes:
        return self.body

    @property
    def text(self) -> str:
        return self.body.decode(self.encoding or "utf-8")

    def iter_content(self, chunk_size: int = 1):
        sent = 0
        for start in range(0, len(self.body), 4):
            chunk = self.body[start:start + 4]
            if self.drop_after is not None and sent >= self.drop_after:
                raise requests.ConnectionError("connection dropped")
            sent += len(chunk)
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for requests.Session; unknown URLs answer 404."""

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes: Dict[str, object] = dict(routes or {})
        self.calls: List[str] = []

    def get(self, url: str, timeout=None, stream: bool = False):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(b"not found", status_code=404)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, (FakeResponse, requests.Response)):
            return route
        return FakeResponse(route)

    def close(self) -> None:
        pass


@pytest.fixture
def public_dir(tmp_path: Path) -> Path:
    d = tmp_path / "public"
    d.mkdir()
    return d


def page(body: str, head: str = "", title: str = "Plesk Extensions") -> str:
    return (
        "<!DOCTYPE html><html><head>"
        f"<title>{title}</title>{head}"
        "</head><body>"
        f"{body}"
        "</body></html>"
    )


def files_under(root: Path) -> List[str]:
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())
