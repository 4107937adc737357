from bson import ObjectId


def post_review(client, auth, email, scholarship_id, rating=4, comment="Helpful staff"):
    return client.post(
        "/reviews",
        json={"scholarshipId": str(scholarship_id), "rating": rating, "comment": comment},
        headers=auth(email),
    )


def test_create_review_sets_owner_and_stats(client, db, auth, make_scholarship):
    sid = make_scholarship()
    res = post_review(client, auth, "rae@example.com", sid, rating=4)
    assert res.status_code == 200
    post_review(client, auth, "sam@example.com", sid, rating=5)

    review = db["reviews"].find_one({"_id": ObjectId(res.json()["insertedId"])})
    assert review["reviewerEmail"] == "rae@example.com"
    assert review["scholarshipId"] == sid
    assert review["reviewDate"] is not None

    scholarship = db["scholarships"].find_one({"_id": sid})
    assert scholarship["reviewCount"] == 2
    assert scholarship["averageRating"] == 4.5


def test_create_review_requires_token(client, make_scholarship):
    res = client.post("/reviews", json={"scholarshipId": str(make_scholarship()), "rating": 3})
    assert res.status_code == 401


def test_create_review_validation(client, auth, make_scholarship):
    sid = make_scholarship()
    assert post_review(client, auth, "rae@example.com", sid, rating=6).status_code == 400
    assert post_review(client, auth, "rae@example.com", "nope").status_code == 400


def test_read_reviews(client, auth, make_scholarship, missing_id):
    sid = make_scholarship()
    other = make_scholarship(scholarshipName="Other")
    review_id = post_review(client, auth, "rae@example.com", sid).json()["insertedId"]
    post_review(client, auth, "sam@example.com", sid)
    post_review(client, auth, "rae@example.com", other)

    assert len(client.get(f"/reviews/{sid}").json()) == 2

    res = client.get(f"/reviews/single/{review_id}")
    assert res.status_code == 200
    assert res.json()["scholarshipId"] == str(sid)
    assert client.get(f"/reviews/single/{missing_id}").status_code == 404

    assert len(client.get("/latest-reviews").json()) == 3

    mine = client.get("/my-reviews", params={"email": "rae@example.com"}, headers=auth("rae@example.com")).json()
    assert sorted(r["scholarshipId"] for r in mine) == sorted([str(sid), str(other)])


def test_owner_edits_review(client, db, auth, make_scholarship):
    sid = make_scholarship()
    review_id = post_review(client, auth, "rae@example.com", sid, rating=2).json()["insertedId"]

    res = client.patch(f"/reviews/{review_id}", json={"rating": 5, "comment": "Changed my mind"},
                       headers=auth("rae@example.com"))
    assert res.status_code == 200
    review = db["reviews"].find_one({"_id": ObjectId(review_id)})
    assert review["rating"] == 5
    assert review["comment"] == "Changed my mind"
    assert db["scholarships"].find_one({"_id": sid})["averageRating"] == 5


def test_other_reviewer_cannot_edit(client, db, auth, make_scholarship):
    sid = make_scholarship()
    review_id = post_review(client, auth, "rae@example.com", sid).json()["insertedId"]

    res = client.patch(f"/reviews/{review_id}", json={"comment": "hijacked"}, headers=auth("sam@example.com"))
    assert res.status_code == 403
    assert res.json()["message"] == "Forbidden: You can only edit your own reviews."
    assert db["reviews"].find_one({"_id": ObjectId(review_id)})["comment"] == "Helpful staff"


def test_edit_needs_fields(client, auth, make_scholarship, missing_id):
    review_id = post_review(client, auth, "rae@example.com", make_scholarship()).json()["insertedId"]
    assert client.patch(f"/reviews/{review_id}", json={}, headers=auth("rae@example.com")).status_code == 400
    assert client.patch(f"/reviews/{missing_id}", json={"rating": 1}, headers=auth("rae@example.com")).status_code == 404


def test_delete_review_ownership_and_stats(client, db, auth, make_scholarship):
    sid = make_scholarship()
    review_id = post_review(client, auth, "rae@example.com", sid).json()["insertedId"]

    res = client.delete(f"/reviews/{review_id}", headers=auth("sam@example.com"))
    assert res.status_code == 403
    assert res.json()["message"] == "Forbidden: You can only delete your own reviews."

    res = client.delete(f"/reviews/{review_id}", headers=auth("rae@example.com"))
    assert res.status_code == 200
    assert res.json()["deletedCount"] == 1
    scholarship = db["scholarships"].find_one({"_id": sid})
    assert scholarship["reviewCount"] == 0
    assert scholarship["averageRating"] == 0
