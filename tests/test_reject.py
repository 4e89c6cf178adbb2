import pytest
from starlette.requests import Request

from ipgate.config import RedirectConfig, RejectConfig
from ipgate.reject import (
    ForbiddenRejector,
    NotFoundRejector,
    RedirectRejector,
    create_rejector,
)


def make_request(path="/private/report", query=b"page=2"):
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "server": ("gate.example", 80),
        "path": path,
        "query_string": query,
        "headers": [(b"host", b"gate.example")],
        "client": ("10.2.3.1", 5555),
    }
    return Request(scope)


def test_forbidden_rejector():
    response = ForbiddenRejector().reject(make_request())
    assert response.status_code == 403
    assert response.body == b"Forbidden"
    assert response.headers["content-type"].startswith("text/plain")


def test_not_found_rejector():
    response = NotFoundRejector().reject(make_request())
    assert response.status_code == 404
    assert response.body == b"Not Found"


def test_redirect_rejector_rewrites_matching_url():
    rejector = RedirectRejector(r"^http://gate\.example/private/(.*)$", r"https://login.example/?next=/private/\1")
    response = rejector.reject(make_request())
    assert response.status_code == 302
    assert response.headers["location"] == "https://login.example/?next=/private/report?page=2"


def test_redirect_rejector_permanent():
    rejector = RedirectRejector(r"^http://gate\.example/(.*)$", r"https://www.example/\1", permanent=True)
    response = rejector.reject(make_request(query=b""))
    assert response.status_code == 301
    assert response.headers["location"] == "https://www.example/private/report"


def test_redirect_rejector_without_match_is_not_found():
    rejector = RedirectRejector(r"^https://other\.example/", "https://login.example/")
    response = rejector.reject(make_request())
    assert response.status_code == 404


def test_create_rejector():
    assert isinstance(create_rejector(RejectConfig()), ForbiddenRejector)
    assert isinstance(create_rejector(RejectConfig(strategy="not_found")), NotFoundRejector)
    redirect = RejectConfig(strategy="redirect", redirect=RedirectConfig(regex=".*", replacement="/"))
    assert create_rejector(redirect).strategy == "redirect"
    with pytest.raises(ValueError):
        create_rejector(RejectConfig(strategy="redirect"))
    with pytest.raises(ValueError):
        create_rejector(RejectConfig(strategy="teapot"))
