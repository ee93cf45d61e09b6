"""
tests/test_webapp.py
"""
from __future__ import annotations

import io
import itertools
import json

import pytest
from flask.testing import FlaskClient

from conftest import ADMIN_IDENTITY
from notepages import interactors
from notepages.app import VERSION
from notepages.interactors import make_login_token, read_login_token
from notepages.webapp import app


# ───────────────────────── helpers ────────────────────────────────────
_user_counter = itertools.count(1)


def _login(client: FlaskClient, identity: str, follow=False):
    """POST /login with a freshly minted token for *identity*."""
    token = make_login_token(app.config["SECRET_KEY"], identity)
    return client.post("/login", data={"token": token}, follow_redirects=follow)


def _csrf(client: FlaskClient) -> str:
    with client.session_transaction() as sess:
        return sess.get("csrf", "")


def _new_user(client: FlaskClient, prefix: str = "user") -> str:
    """Log in with a new identity and go through the first-connection form."""
    name = f"{prefix}{next(_user_counter)}"
    _login(client, f"{name}@example.org")
    rv = client.post("/first_connection.html", data={"name": name, "csrf": _csrf(client)})
    assert rv.status_code == 302
    return name


def _create_page(client: FlaskClient, page_name: str, template: str = "blog2col"):
    return client.post(
        "/create.html",
        data={"pageName": page_name, "template": template, "csrf": _csrf(client)},
    )


def _make_public(client: FlaskClient, user: str, page: str, **fields):
    data = {
        "userName": user,
        "pageName": page,
        "title": page.title(),
        "policy": "PUBLIC",
        "csrf": _csrf(client),
    }
    data.update(fields)
    return client.post("/administrate.html", data=data)


def _post_item(client: FlaskClient, user: str, page: str, **fields):
    return client.post(
        f"/api/users/{user}/pages/{page}/items",
        data=fields,
        headers={"X-CSRFToken": _csrf(client)},
    )


@pytest.fixture(scope="module", autouse=True)
def _seeded_templates():
    with app.test_client() as admin, app.app_context():
        _login(admin, ADMIN_IDENTITY)
        rv = admin.post("/templates.htm", data={"csrf": _csrf(admin)})
        assert rv.status_code == 302


# ─────────────────────────■  basics  ■─────────────────────────────────
def test_api_version(client):
    rv = client.get("/api/version")
    assert rv.status_code == 200
    assert rv.get_json() == {"version": VERSION}


def test_security_headers(client):
    rv = client.get("/")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"


def test_anonymous_index(client):
    rv = client.get("/")
    assert rv.status_code == 200
    assert b"Log in" in rv.data


def test_unknown_route_is_404(client):
    assert client.get("/no/such/thing").status_code == 404


# ─────────────────────────■  login + first connection  ■───────────────
def test_bad_token_is_refused(client):
    rv = client.post("/login", data={"token": "forged.token.value"})
    assert rv.status_code == 200
    assert b"Invalid or expired token" in rv.data
    with client.session_transaction() as sess:
        assert "ident" not in sess


def test_login_redirects_to_next(client):
    token = make_login_token(app.config["SECRET_KEY"], "someone@example.org")
    rv = client.post("/login", data={"token": token, "next": "/user/images.html"})

    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/user/images.html")
    with client.session_transaction() as sess:
        assert sess["ident"] == ["token", "someone@example.org"]
        assert sess["csrf"]


def test_login_ignores_offsite_next(client):
    token = make_login_token(app.config["SECRET_KEY"], "someone@example.org")
    rv = client.post("/login", data={"token": token, "next": "//evil.example/"})
    assert rv.headers["Location"].endswith("/")
    assert "evil" not in rv.headers["Location"]


def test_unknown_identity_goes_to_first_connection(client):
    _login(client, "fresh@example.org")

    rv = client.get("/")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/first_connection.html")

    rv = client.get("/api/currentUser")
    assert rv.status_code == 401


def test_first_connection_creates_user(client):
    name = _new_user(client)

    rv = client.get("/api/currentUser")
    assert rv.get_json()["name"] == name
    assert client.get("/").status_code == 200
    # already created: back to the index
    assert client.get("/first_connection.html").status_code == 302


def test_first_connection_rejects_bad_name(client):
    _login(client, "shouty@example.org")
    rv = client.post("/first_connection.html", data={"name": "NO", "csrf": _csrf(client)})
    assert rv.status_code == 400


def test_logout_clears_session(client):
    _new_user(client)
    client.get("/logout")
    with client.session_transaction() as sess:
        assert "ident" not in sess


def test_post_without_csrf_is_forbidden(client):
    user = _new_user(client)
    _create_page(client, "guarded")

    rv = client.post(f"/api/users/{user}/pages/guarded/items", data={"content": "x"})
    assert rv.status_code == 403


# ─────────────────────────■  pages  ■──────────────────────────────────
def test_create_page_and_view_it(client):
    user = _new_user(client)

    rv = _create_page(client, "diary")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith(f"/p/{user}/diary.html#administrate")

    rv = client.get(f"/p/{user}/diary.html")
    assert rv.status_code == 200
    assert b"diary" in rv.data


def test_create_page_anonymous_goes_to_login(client):
    rv = client.post("/create.html", data={"pageName": "x"})
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]


def test_missing_own_page_redirects_to_create(client):
    user = _new_user(client)
    rv = client.get(f"/p/{user}/nothing-yet.html")
    assert rv.status_code == 302
    assert "/create.html" in rv.headers["Location"]


def test_private_page_sends_anonymous_to_login(client):
    user = _new_user(client)
    _create_page(client, "hidden")

    anon = app.test_client()
    rv = anon.get(f"/p/{user}/hidden.html")
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]

    rv = anon.get(f"/api/users/{user}/pages/hidden")
    assert rv.status_code == 401
    assert "error" in rv.get_json()


def test_other_user_gets_401(client):
    owner = _new_user(client)
    _create_page(client, "mine")

    with app.test_client() as other:
        _new_user(other)
        rv = other.get(f"/p/{owner}/mine.html")
        assert rv.status_code == 401


def test_administrate_stores_non_default_tags_only(client):
    user = _new_user(client)
    _create_page(client, "styled")

    rv = _make_public(
        client, user, "styled", **{"tag-background": "default", "tag-title.color": "#ff0000"}
    )
    assert rv.status_code == 302

    page = client.get(f"/api/users/{user}/pages/styled").get_json()
    assert page["policy"] == "PUBLIC"
    assert page["tags"] == [{"key": "title.color", "value": "#ff0000"}]


def test_change_template_and_delete_page(client):
    user = _new_user(client)
    _create_page(client, "todo")

    rv = client.post(
        "/change_template.html",
        data={"userName": user, "pageName": "todo", "templateID": "todolist", "csrf": _csrf(client)},
    )
    assert rv.status_code == 302
    assert client.get(f"/api/users/{user}/pages/todo").get_json()["templateID"] == "todolist"

    rv = client.post(
        "/delete.html", data={"userName": user, "pageName": "todo", "csrf": _csrf(client)}
    )
    assert rv.status_code == 302
    assert client.get(f"/api/users/{user}/pages/todo").status_code == 404


def test_public_pages_listed_on_index(client):
    user = _new_user(client)
    _create_page(client, "showcase")
    _make_public(client, user, "showcase", title="Showcase Page")

    rv = app.test_client().get("/")
    assert b"Showcase Page" in rv.data


# ─────────────────────────■  items API  ■──────────────────────────────
def test_item_lifecycle_through_api(client):
    user = _new_user(client)
    _create_page(client, "api")
    base = f"/api/users/{user}/pages/api/items"
    headers = {"X-CSRFToken": _csrf(client)}

    rv = _post_item(client, user, "api", title="First", content="*hello*")
    assert rv.status_code == 201
    item = rv.get_json()
    assert "<em>hello</em>" in item["htmlContent"]

    rv = client.get(base)
    assert [i["id"] for i in rv.get_json()] == [item["id"]]

    rv = client.post(f"{base}/{item['id']}", data={"content": "edited"}, headers=headers)
    assert rv.status_code == 202
    assert rv.get_json()["content"] == "edited"

    rv = client.post(
        f"{base}/{item['id']}",
        data={"mode": "updateTag", "tag-status": "done", "tag-deadline": "tomorrow"},
        headers=headers,
    )
    assert rv.status_code == 202
    tags = {t["key"]: t["value"] for t in rv.get_json()["tags"]}
    assert tags == {"deadline": "tomorrow", "status": "done"}

    rv = client.put(
        f"{base}/custom-id",
        data=json.dumps({"content": "put", "tags": [{"key": "k", "value": "v"}]}),
        content_type="application/json",
        headers=headers,
    )
    assert rv.status_code == 200
    assert rv.get_json()["id"] == "custom-id"

    rv = client.delete(f"{base}/{item['id']}", headers=headers)
    assert rv.status_code == 200
    assert [i["id"] for i in client.get(base).get_json()] == ["custom-id"]


def test_create_item_from_json_body(client):
    user = _new_user(client)
    _create_page(client, "jsonbody")

    rv = client.post(
        f"/api/users/{user}/pages/jsonbody/items",
        data=json.dumps({"title": "J", "url": "https://example.org"}),
        content_type="application/json",
        headers={"X-CSRFToken": _csrf(client)},
    )
    assert rv.status_code == 201
    assert rv.get_json()["url"] == "https://example.org"


def test_empty_item_is_400(client):
    user = _new_user(client)
    _create_page(client, "empty")

    rv = _post_item(client, user, "empty", title="nothing")
    assert rv.status_code == 400
    assert "error" in rv.get_json()


def test_edit_missing_item_is_404(client):
    user = _new_user(client)
    _create_page(client, "ghosts")

    rv = client.post(
        f"/api/users/{user}/pages/ghosts/items/nope",
        data={"content": "x"},
        headers={"X-CSRFToken": _csrf(client)},
    )
    assert rv.status_code == 404


def test_add_and_delete_item_through_forms(client):
    user = _new_user(client)
    _create_page(client, "forms")

    rv = client.post(f"/p/{user}/forms.html", data={"content": "*from* a form", "csrf": _csrf(client)})
    assert rv.status_code == 302
    assert b"<em>from</em> a form" in client.get(f"/p/{user}/forms.html").data
    item_id = client.get(f"/api/users/{user}/pages/forms/items").get_json()[0]["id"]

    assert client.get(
        "/deleteItem.html", query_string={"userName": user, "pageName": "forms", "itemID": item_id}
    ).status_code == 200
    rv = client.post(
        "/deleteItem.html",
        data={"userName": user, "pageName": "forms", "itemID": item_id, "csrf": _csrf(client)},
    )
    assert rv.status_code == 302
    assert client.get(f"/api/users/{user}/pages/forms/items").get_json() == []


def test_script_url_is_refused_and_never_rendered(client):
    user = _new_user(client)
    _create_page(client, "links")
    _make_public(client, user, "links")

    rv = _post_item(client, user, "links", title="click", URL="javascript:alert(document.cookie)")
    assert rv.status_code == 400
    assert rv.get_json()["error"].startswith("Invalid url")

    html = app.test_client().get(f"/p/{user}/links.html").get_data(as_text=True)
    assert 'href="javascript:' not in html


def test_edit_item_through_forms(client):
    user = _new_user(client)
    _create_page(client, "drafts")
    _post_item(client, user, "drafts", title="Draft", content="first take")
    item = client.get(f"/api/users/{user}/pages/drafts/items").get_json()[0]
    client.post(
        f"/api/users/{user}/pages/drafts/items/{item['id']}",
        data={"mode": "updateTag", "tag-status": "done"},
        headers={"X-CSRFToken": _csrf(client)},
    )
    query = {"userName": user, "pageName": "drafts", "itemID": item["id"]}

    page = client.get(f"/p/{user}/drafts.html").get_data(as_text=True)
    assert "/editItem.html?" in page

    rv = client.get("/editItem.html", query_string=query)
    assert rv.status_code == 200
    assert b"first take" in rv.data
    assert b'value="Draft"' in rv.data

    rv = client.post("/editItem.html", data={**query, "title": "Final", "content": "second take", "csrf": _csrf(client)})
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith(f"/p/{user}/drafts.html#item-{item['id']}")

    stored = client.get(f"/api/users/{user}/pages/drafts/items").get_json()[0]
    assert (stored["title"], stored["content"]) == ("Final", "second take")
    assert stored["tags"] == [{"key": "status", "value": "done"}]

    rv = client.post("/editItem.html", data={**query, "URL": "javascript:x", "csrf": _csrf(client)})
    assert rv.status_code == 400


def test_edit_item_of_someone_else_is_refused(client):
    owner = _new_user(client)
    _create_page(client, "shared")
    _make_public(client, owner, "shared")
    _post_item(client, owner, "shared", content="mine")
    item_id = client.get(f"/api/users/{owner}/pages/shared/items").get_json()[0]["id"]
    query = {"userName": owner, "pageName": "shared", "itemID": item_id}

    with app.test_client() as other:
        _new_user(other)
        assert other.get("/editItem.html", query_string=query).status_code == 401
        rv = other.post("/editItem.html", data={**query, "content": "hijacked", "csrf": _csrf(other)})
        assert rv.status_code == 401

    assert client.get(f"/api/users/{owner}/pages/shared/items").get_json()[0]["content"] == "mine"


# ─────────────────────────■  feed + export/import  ■───────────────────
def test_atom_feed(client):
    user = _new_user(client)
    _create_page(client, "feed")
    _make_public(client, user, "feed", title="My Feed")
    _post_item(client, user, "feed", title="Entry <1>", content="body", source="me")

    rv = app.test_client().get(f"/p/{user}/feed/atom.xml")
    assert rv.status_code == 200
    assert rv.mimetype == "application/atom+xml"
    assert b"<title>My Feed</title>" in rv.data
    assert b"<title>Entry &lt;1&gt;</title>" in rv.data
    assert b"<author><name>me</name></author>" in rv.data


def test_export_and_import(client):
    user = _new_user(client)
    _create_page(client, "source")
    _make_public(client, user, "source", title="Exported")
    _post_item(client, user, "source", content="carried over")

    rv = client.get(f"/p/{user}/source/{user}_source.json")
    assert rv.status_code == 200
    assert "attachment" in rv.headers["Content-Disposition"]
    exported = json.loads(rv.data)
    assert exported["Page"]["title"] == "Exported"

    _create_page(client, "target")
    rv = client.post(
        "/importPage.html",
        data={
            "userName": user,
            "pageName": "target",
            "csrf": _csrf(client),
            "file": (io.BytesIO(rv.data), "export.json"),
        },
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302

    page = client.get(f"/api/users/{user}/pages/target").get_json()
    assert page["title"] == "Exported"
    items = client.get(f"/api/users/{user}/pages/target/items").get_json()
    assert [i["content"] for i in items] == ["carried over"]


def test_import_rejects_garbage(client):
    user = _new_user(client)
    _create_page(client, "junk")

    rv = client.post(
        "/importPage.html",
        data={
            "userName": user,
            "pageName": "junk",
            "csrf": _csrf(client),
            "file": (io.BytesIO(b"not json"), "x.json"),
        },
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400


def test_import_rejects_malformed_export(client):
    user = _new_user(client)
    _create_page(client, "strict")
    before = client.get(f"/api/users/{user}/pages/strict").get_json()

    rv = client.post(
        "/importPage.html",
        data={
            "userName": user,
            "pageName": "strict",
            "csrf": _csrf(client),
            "file": (io.BytesIO(b'{"Page": {"policy": "bogus"}, "Items": ["x"]}'), "x.json"),
        },
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400
    assert client.get(f"/api/users/{user}/pages/strict").get_json() == before


def test_export_name_must_match(client):
    user = _new_user(client)
    _create_page(client, "named")
    assert client.get(f"/p/{user}/named/wrong.json").status_code == 404


# ─────────────────────────■  images  ■─────────────────────────────────
class _FakeS3:
    def __init__(self):
        self.objects = {}

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self.objects[key] = fileobj.read()

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)


def test_default_background_is_inline_svg(client):
    rv = client.get("/images/default")
    assert rv.status_code == 200
    assert rv.mimetype == "image/svg+xml"


def test_image_redirects_to_bucket(client):
    rv = client.get("/images/uploads/2099/01/01/abc.png")
    assert rv.status_code == 302
    assert rv.headers["Location"] == "https://img.example.org/uploads/2099/01/01/abc.png"


def test_upload_rename_delete_image(client, monkeypatch):
    s3 = _FakeS3()
    monkeypatch.setattr(interactors, "_r2_client", lambda cfg: s3)
    _new_user(client)

    rv = client.post(
        "/user/images.html",
        data={"csrf": _csrf(client), "file": (io.BytesIO(b"\x89PNG"), "cat.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302
    (key,) = s3.objects

    rv = client.get("/user/images.html")
    assert rv.status_code == 200
    assert b"cat.png" in rv.data

    client.post(
        "/user/images/rename.html",
        data={"imgID": key, "imageName": "kitten.png", "csrf": _csrf(client)},
    )
    assert b"kitten.png" in client.get("/user/images.html").data

    client.post("/user/images/delete.html", data={"imgID": key, "csrf": _csrf(client)})
    assert b"kitten.png" not in client.get("/user/images.html").data


def test_images_page_needs_login(client):
    rv = client.get("/user/images.html")
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]


# ─────────────────────────■  templates + CLI  ■────────────────────────
def test_templates_page_is_admin_only(client):
    _new_user(client)
    assert client.get("/templates.htm").status_code == 401

    with app.test_client() as admin:
        _login(admin, ADMIN_IDENTITY)
        rv = admin.get("/templates.htm")
        assert rv.status_code == 200
        assert b"todolist" in rv.data


def test_cli_token_is_accepted():
    runner = app.test_cli_runner()
    result = runner.invoke(args=["token", "--identity", "cli@example.org"])

    assert result.exit_code == 0
    identities = [
        read_login_token(app.config["SECRET_KEY"], ln.strip())
        for ln in result.output.splitlines()
        if ln.strip()
    ]
    assert "cli@example.org" in identities


def test_cli_seed_templates():
    runner = app.test_cli_runner()
    result = runner.invoke(args=["seed-templates"])

    assert result.exit_code == 0
    assert "blog2col" in result.output
    assert "todolist" in result.output


def test_cli_init_is_idempotent():
    result = app.test_cli_runner().invoke(args=["init"])
    assert result.exit_code == 0
    assert "Database ready" in result.output
