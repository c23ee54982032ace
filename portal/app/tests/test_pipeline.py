"""
HTTP Pipeline Tests

Tests stage order, HTTPS enforcement, static assets, the anti-forgery check
and the exception boundary in both environments.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.sessions import SessionMiddleware

from portal.app.main import create_app
from portal.app.pipeline import (
    ANTIFORGERY_COOKIE,
    ANTIFORGERY_MAX_FORM_BYTES,
    PIPELINE_STAGES,
    AntiforgeryMiddleware,
    SecurityHeadersMiddleware,
    StaticAssetsMiddleware,
)

from conftest import FakeOidcClient, antiforgery_token, make_settings, sign_in


def _client(app, base_url="https://testserver"):
    return TestClient(app, base_url=base_url, raise_server_exceptions=False)


def _app_with_failing_route(settings):
    app = create_app(settings, oidc_client=FakeOidcClient())

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom in handler")

    return app


class TestStageOrder:
    """Test suite for pipeline composition"""

    def test_stage_names(self):
        assert PIPELINE_STAGES == (
            "exception_boundary",
            "https",
            "static_assets",
            "antiforgery",
            "correlation_session",
            "pages",
            "identity_endpoints",
        )

    def test_middleware_order_outermost_first(self, app):
        assert [m.cls for m in app.user_middleware] == [
            HTTPSRedirectMiddleware,
            SecurityHeadersMiddleware,
            StaticAssetsMiddleware,
            AntiforgeryMiddleware,
            SessionMiddleware,
        ]

    def test_https_redirection_can_be_disabled(self):
        app = create_app(make_settings(HTTPS_REDIRECTION=False), oidc_client=FakeOidcClient())

        assert HTTPSRedirectMiddleware not in [m.cls for m in app.user_middleware]


class TestHttps:
    """Test suite for HTTPS redirection and HSTS"""

    def test_plain_http_redirected(self, app):
        with _client(app, base_url="http://testserver") as client:
            response = client.get("/auth?x=1", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "https://testserver/auth?x=1"

    def test_hsts_outside_development(self, client):
        response = client.get("/health")

        assert response.headers["strict-transport-security"] == "max-age=2592000"
        assert response.headers["x-content-type-options"] == "nosniff"

    def test_no_hsts_in_development(self):
        app = create_app(make_settings(ENVIRONMENT="Development"), oidc_client=FakeOidcClient())

        with _client(app) as client:
            response = client.get("/health")

        assert "strict-transport-security" not in response.headers


class TestStaticAssets:
    """Test suite for the static assets stage"""

    def test_packaged_stylesheet(self, client):
        response = client.get("/app.css")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/css")

    def test_custom_directory(self, tmp_path):
        (tmp_path / "robots.txt").write_text("User-agent: *\n")
        app = create_app(make_settings(STATIC_DIRECTORY=str(tmp_path)), oidc_client=FakeOidcClient())

        with _client(app) as client:
            response = client.get("/robots.txt")

        assert response.status_code == 200
        assert response.text == "User-agent: *\n"

    def test_missing_file_falls_through_to_routes(self, client):
        assert client.get("/health").json()["status"] == "ok"
        assert client.get("/missing.css").status_code == 404

    def test_path_traversal_not_served(self, client):
        response = client.get("/../config.py")

        assert response.status_code == 404


class TestAntiforgery:
    """Test suite for the anti-forgery stage"""

    def test_token_cookie_issued_once(self, client):
        first = client.get("/")
        second = client.get("/")

        assert ANTIFORGERY_COOKIE in first.cookies
        assert ANTIFORGERY_COOKIE not in second.cookies

    def test_page_token_matches_cookie(self, client):
        page = client.get("/Account/Login")

        assert antiforgery_token(page.text) == client.cookies.get(ANTIFORGERY_COOKIE)

    def test_header_token_accepted(self, client, app):
        sign_in(client, app)

        response = client.post(
            "/Account/Logout",
            headers={"X-CSRF-TOKEN": client.cookies.get(ANTIFORGERY_COOKIE)},
            follow_redirects=False,
        )

        assert response.status_code == 303

    def test_mismatched_token_rejected(self, client):
        client.get("/Account/Login")

        response = client.post(
            "/Account/Logout",
            data={"__RequestVerificationToken": "not-the-token"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert "anti-forgery token" in response.text

    def test_oversized_form_rejected(self, client):
        client.get("/Account/Login")

        response = client.post(
            "/Account/Logout",
            data={"padding": "x" * (ANTIFORGERY_MAX_FORM_BYTES + 1)},
            follow_redirects=False,
        )

        assert response.status_code == 413

    def test_header_token_skips_body_limit(self, client, app):
        sign_in(client, app)

        response = client.post(
            "/Account/Logout",
            headers={
                "X-CSRF-TOKEN": client.cookies.get(ANTIFORGERY_COOKIE),
                "Content-Type": "application/octet-stream",
            },
            content=b"x" * (ANTIFORGERY_MAX_FORM_BYTES + 1),
            follow_redirects=False,
        )

        assert response.status_code == 303

    def test_post_without_cookie_rejected(self, client):
        response = client.post(
            "/Account/Logout",
            headers={"X-CSRF-TOKEN": "guessed"},
            follow_redirects=False,
        )

        assert response.status_code == 400


class TestExceptionBoundary:
    """Test suite for unhandled errors"""

    def test_generic_page_in_production(self):
        app = _app_with_failing_route(make_settings())

        with _client(app) as client:
            response = client.get("/boom")

        assert response.status_code == 500
        assert "An error occurred while processing your request." in response.text
        assert "kaboom" not in response.text
        assert "Traceback" not in response.text

    def test_diagnostics_in_development(self):
        app = _app_with_failing_route(make_settings(ENVIRONMENT="Development"))

        with _client(app) as client:
            response = client.get("/boom")

        assert response.status_code == 500
        assert "RuntimeError: kaboom in handler" in response.text
        assert "Traceback" in response.text

    @pytest.mark.parametrize("environment", ["Production", "Development"])
    def test_error_page_is_html(self, environment):
        app = _app_with_failing_route(make_settings(ENVIRONMENT=environment))

        with _client(app) as client:
            response = client.get("/boom")

        assert response.headers["content-type"].startswith("text/html")
