from agromart import blog
from agromart.schemas import BlogPost

CONTENT = "Drip lines cut water use on tomato beds by a third."


def write_post(db, title, published=True, **extra):
    return blog.create_post(db, BlogPost(title=title, content=CONTENT, published=published, **extra))


def test_slug_is_generated_and_made_unique(db):
    first = write_post(db, "Drip Irrigation Basics")
    second = write_post(db, "Drip Irrigation Basics")
    assert first["slug"] == "drip-irrigation-basics"
    assert second["slug"] == "drip-irrigation-basics-2"
    assert first["published_at"] is not None


def test_public_listing_hides_drafts(client, db):
    write_post(db, "Soil Testing at Home", category="Soil", tags=["soil"])
    write_post(db, "Unfinished Draft", published=False)

    listing = client.get("/api/blog").json()["data"]
    assert [p["title"] for p in listing["items"]] == ["Soil Testing at Home"]

    by_tag = client.get("/api/blog", params={"tag": "soil"}).json()["data"]
    assert by_tag["pagination"]["total"] == 1

    cats = client.get("/api/blog/categories").json()["data"]
    assert cats == [{"name": "Soil", "count": 1}]


def test_reading_by_slug_counts_views(client, db):
    write_post(db, "Composting 101")
    client.get("/api/blog/slug/composting-101")
    res = client.get("/api/blog/slug/composting-101")
    assert res.json()["data"]["views"] == 2


def test_draft_is_not_readable_by_slug(client, db):
    write_post(db, "Secret Draft", published=False)
    res = client.get("/api/blog/slug/secret-draft")
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "POST_NOT_FOUND"


def test_admin_publishes_draft(client, db, admin, auth_header):
    draft = write_post(db, "Mulching Guide", published=False)
    headers = auth_header(admin)

    res = client.put(f"/api/blog/admin/{draft['_id']}", json={"published": True}, headers=headers)

    assert res.status_code == 200
    assert res.json()["data"]["published"] is True
    assert res.json()["data"]["published_at"] is not None
    everything = client.get("/api/blog/admin", headers=headers).json()["data"]
    assert everything["pagination"]["total"] == 1


def test_duplicate_explicit_slug(client, db, admin, auth_header):
    write_post(db, "Crop Rotation", slug="crop-rotation")
    res = client.post("/api/blog/admin", json={"title": "Crop Rotation Again", "slug": "crop-rotation",
                                               "content": CONTENT}, headers=auth_header(admin))
    assert res.status_code == 409
