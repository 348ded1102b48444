from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from ludus.core.exceptions import ConflictException, ServiceException
from ludus.errors import register_error_handlers


class Payload(BaseModel):
    count: int


def _app() -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/conflict")
    def conflict() -> None:
        raise ConflictException("Already taken", code="TAKEN", details={"slot": 3})

    @app.get("/service")
    def service() -> None:
        raise ServiceException("Backend unavailable", code="UPSTREAM")

    @app.get("/http")
    def http() -> None:
        raise HTTPException(status_code=429, detail="Slow down", headers={"Retry-After": "5"})

    @app.post("/validate")
    def validate(payload: Payload) -> dict:
        return {"count": payload.count}

    @app.get("/crash")
    def crash() -> None:
        raise RuntimeError("secret internals")

    return app


class TestErrorHandlers:
    def test_domain_exception(self) -> None:
        response = TestClient(_app()).get("/conflict")

        assert response.status_code == 409
        assert response.headers["content-type"].startswith("application/problem+json")
        assert response.json() == {
            "type": "about:blank",
            "title": "Conflict",
            "status": 409,
            "detail": "Already taken",
            "instance": "/conflict",
            "code": "TAKEN",
            "errors": {"slot": 3},
        }

    def test_service_exception_is_logged(self, caplog) -> None:
        response = TestClient(_app()).get("/service")
        assert response.status_code == 500
        assert response.json()["code"] == "UPSTREAM"
        assert "Service error on /service: Backend unavailable" in caplog.text

    def test_http_exception_keeps_headers(self) -> None:
        response = TestClient(_app()).get("/http")
        assert response.status_code == 429
        assert response.headers["retry-after"] == "5"
        assert response.json()["detail"] == "Slow down"
        assert response.json()["title"] == "Too Many Requests"

    def test_request_validation(self) -> None:
        response = TestClient(_app()).post("/validate", json={"count": "many"})
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"
        assert response.json()["errors"][0]["loc"] == ["body", "count"]

    def test_unhandled_exception_hides_details(self) -> None:
        client = TestClient(_app(), raise_server_exceptions=False)
        response = client.get("/crash")
        assert response.status_code == 500
        assert response.json()["detail"] == "Internal Server Error"
        assert "secret" not in response.text
