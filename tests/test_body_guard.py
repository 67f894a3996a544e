from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.middlewares.body_guard import BodyGuardMiddleware


def _app(max_bytes):
    guarded = FastAPI()
    guarded.add_middleware(BodyGuardMiddleware, max_bytes=max_bytes)

    @guarded.post("/api/echo")
    async def echo(request: Request):
        return {"size": len(await request.body())}

    @guarded.post("/upload")
    async def upload(request: Request):
        return {"size": len(await request.body())}

    return guarded


def test_oversized_api_body_is_rejected() -> None:
    client = TestClient(_app(64))

    response = client.post("/api/echo", content=b"x" * 65)

    assert response.status_code == 413
    assert "too large" in response.json()["error"]


def test_small_body_reaches_the_route() -> None:
    client = TestClient(_app(64))

    response = client.post("/api/echo", content=b"x" * 10)

    assert response.status_code == 200
    assert response.json() == {"size": 10}


def test_paths_outside_api_are_not_guarded() -> None:
    client = TestClient(_app(8))

    assert client.post("/upload", content=b"x" * 100).status_code == 200


def test_zero_limit_disables_the_guard() -> None:
    client = TestClient(_app(0))

    assert client.post("/api/echo", content=b"x" * 1000).status_code == 200
