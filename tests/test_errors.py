"""
tests/test_errors.py
"""
from __future__ import annotations

from highlights.app import app


def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    assert b"Back to the front page" in resp.data


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "index", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_search_results_requires_query(client):
    for url in ("/searchResults", "/searchResults?q=", "/searchResults?q=%20%20"):
        resp = client.get(url)
        assert resp.status_code == 400
        assert b"Query parameter 'q' is required" in resp.data


def test_source_name_required(client):
    resp = client.get("/source/")
    assert resp.status_code == 400
    assert resp.data == b"Source name required"


def test_upload_rejects_get(client):
    assert client.get("/admin/upload").status_code == 405


def test_upload_too_large(admin, monkeypatch):
    monkeypatch.setitem(app.config, "MAX_CONTENT_LENGTH", 1024)
    resp = admin.post(
        "/admin/upload",
        data={
            "csrf": "t0k",
            "source_name": "Big",
            "source_type": "book",
            "highlights_text": "x" * 4096,
        },
    )
    assert resp.status_code == 413
