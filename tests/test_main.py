"""
Tests for Main Application.

Covers the root and metrics endpoints, exception handlers and request middleware.
"""

from unittest.mock import AsyncMock, patch

import pytest

from app.exceptions import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    DataIntegrityError,
    ExternalDependencyError,
    NotFoundError,
    WriteVerificationError,
)

ACCOUNT = "12345678-1234-5678-1234-567812345678"
BALANCE_PATH = f"/v1/ledger/accounts/{ACCOUNT}/balance"
RECONCILIATION_PATH = f"/v1/ledger/accounts/{ACCOUNT}/reconciliation"


class TestRootEndpoints:
    """Tests for service metadata endpoints."""

    def test_root(self, client):
        from app.config import settings

        response = client.get("/")

        assert response.status_code == 200
        assert response.json() == {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "running",
        }

    def test_metrics(self, client):
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

    def test_metrics_disabled(self, client):
        from app.config import settings

        with patch.object(settings, "metrics_enabled", False):
            response = client.get("/metrics")

        assert response.status_code == 404

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestExceptionHandlers:
    """Ledger errors escaping a route map to stable HTTP responses."""

    def _get_with_error(self, client, error, path=BALANCE_PATH):
        with patch("app.api.routes.LedgerService") as MockService:
            MockService.return_value.get_by_account_id = AsyncMock(side_effect=error)
            MockService.return_value.reconcile = AsyncMock(side_effect=error)
            return client.get(path)

    def test_concurrency_conflict_is_retryable(self, client):
        response = self._get_with_error(client, ConcurrencyConflictError("token_balances"))

        assert response.status_code == 409
        assert response.headers["Retry-After"] == "0"
        assert response.json()["detail"]["reason"] == "CONCURRENT_MODIFICATION"

    def test_external_dependency_unavailable(self, client):
        response = self._get_with_error(client, ExternalDependencyError("connection refused"))

        assert response.status_code == 503
        assert response.json() == {"detail": "Balance store unavailable"}

    @pytest.mark.parametrize(
        "error",
        [
            DataIntegrityError("replayed balance is negative"),
            WriteVerificationError("balance row missing after upsert"),
        ],
    )
    def test_integrity_failures_hide_details(self, client, error):
        response = self._get_with_error(client, error, RECONCILIATION_PATH)

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal ledger error"}

    def test_constraint_violation(self, client):
        response = self._get_with_error(
            client, ConstraintViolationError("CODE_DISABLED", "Discount code is disabled")
        )

        assert response.status_code == 409
        assert response.json()["detail"] == {
            "reason": "CODE_DISABLED",
            "message": "Discount code is disabled",
        }
        assert "Retry-After" not in response.headers

    def test_not_found(self, client):
        response = self._get_with_error(client, NotFoundError("account", ACCOUNT))

        assert response.status_code == 404
        assert ACCOUNT in response.json()["detail"]

    def test_request_validation_is_sanitized(self, client):
        response = client.get("/v1/ledger/accounts/not-a-uuid/balance")

        assert response.status_code == 422
        (error,) = response.json()["detail"]
        assert error["loc"] == ["path", "account_id"]
        assert error["input"] == "not-a-uuid"
        assert set(error) <= {"type", "loc", "msg", "input", "ctx"}


class TestRequestMiddleware:
    """Tests for request logging and proxy headers."""

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_defaults(self, client):
        response = client.get("/")

        assert response.headers["X-Request-ID"] == "unknown"
