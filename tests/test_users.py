import os

import pytest

from errors import NotFound, ValidationFailed
from media import MediaUpload


@pytest.fixture
def people(make_user):
    return make_user("Alice Smith", "alice"), make_user("Bob Jones", "bob")


def test_follow_keeps_both_sides_consistent(services, people):
    alice, bob = people
    assert services.users.follow_toggle(alice, bob) is True

    alice_doc = services.db["user"].find_one({"username": "alice"})
    bob_doc = services.db["user"].find_one({"username": "bob"})
    assert alice_doc["following"] == [bob]
    assert bob_doc["followers"] == [alice]
    assert services.db["notification"].count_documents({"type": "follow", "to_user": bob}) == 1

    assert services.users.follow_toggle(alice, bob) is False
    alice_doc = services.db["user"].find_one({"username": "alice"})
    bob_doc = services.db["user"].find_one({"username": "bob"})
    assert alice_doc["following"] == []
    assert bob_doc["followers"] == []
    assert services.db["notification"].count_documents({"type": "follow"}) == 0


def test_follow_normalizes_id_spelling(services, people):
    alice, bob = people
    assert services.users.follow_toggle(alice, bob.upper()) is True
    assert services.db["user"].find_one({"username": "alice"})["following"] == [bob]
    assert services.db["user"].find_one({"username": "bob"})["followers"] == [alice]

    assert services.users.follow_toggle(alice, bob) is False
    assert services.db["user"].find_one({"username": "alice"})["following"] == []
    with pytest.raises(ValidationFailed):
        services.users.follow_toggle(alice, alice.upper())


def test_follow_rejects_self_and_unknown(services, people):
    alice, _ = people
    with pytest.raises(ValidationFailed):
        services.users.follow_toggle(alice, alice)
    with pytest.raises(NotFound):
        services.users.follow_toggle(alice, "64b7f0000000000000000000")


def test_profile_hides_credentials(services, people):
    profile = services.users.get_profile("ALICE")
    assert profile["full_name"] == "Alice Smith"
    assert "password_hash" not in profile
    with pytest.raises(NotFound):
        services.users.get_profile("nobody")


def test_update_profile_checks_limits_and_uniqueness(services, people):
    alice, _ = people
    with pytest.raises(ValidationFailed):
        services.users.update_profile(alice, bio="x" * 161)
    with pytest.raises(ValidationFailed):
        services.users.update_profile(alice, location="x" * 51)
    with pytest.raises(ValidationFailed):
        services.users.update_profile(alice, website="x" * 101)
    with pytest.raises(ValidationFailed):
        services.users.update_profile(alice, username="Bob")
    with pytest.raises(ValidationFailed):
        services.users.update_profile(alice, email="bob@sparrow.io")

    updated = services.users.update_profile(alice, username="Alice_S", bio="", location="Lisbon")
    assert updated["username"] == "alice_s"
    assert updated["bio"] == ""
    assert updated["location"] == "Lisbon"


def test_search_excludes_self(services, people):
    alice, _ = people
    found = services.users.search(alice, "sparrow.io")
    assert [u["username"] for u in found] == ["bob"]
    with pytest.raises(ValidationFailed):
        services.users.search(alice, "")


def test_followers_and_following_pages(services, people, make_user):
    alice, bob = people
    carol = make_user("Carol King", "carol")
    services.users.follow_toggle(bob, alice)
    services.users.follow_toggle(carol, alice)

    page = services.users.followers(alice, page=1, limit=1)
    assert len(page["followers"]) == 1
    assert page["pagination"]["total_followers"] == 2
    assert page["pagination"]["has_more"] is True
    assert [u["username"] for u in services.users.following(bob)["following"]] == ["alice"]


def test_suggested_prefers_friends_of_friends(services, people, make_user):
    alice, bob = people
    carol = make_user("Carol King", "carol")
    dave = make_user("Dave Moss", "dave")
    services.users.follow_toggle(alice, bob)
    services.users.follow_toggle(bob, carol)
    services.users.follow_toggle(dave, alice)

    suggestions = services.users.suggested(alice)
    usernames = [u["username"] for u in suggestions]
    assert usernames[0] == "carol"
    assert suggestions[0]["mutual_count"] == 1
    assert "alice" not in usernames
    assert "bob" not in usernames
    assert "dave" in usernames


def test_profile_image_replaces_previous_file(services, people, media):
    alice, _ = people
    with pytest.raises(ValidationFailed):
        services.users.upload_profile_image(alice, None)

    first = services.users.upload_profile_image(alice, MediaUpload("me.png", "image/png", b"\x89PNG"))
    assert first["profile_img"].startswith("/media/profiles/")
    first_path = os.path.join(media.root, first["profile_img"][len("/media/"):])
    assert os.path.exists(first_path)
    assert "password_hash" not in first

    second = services.users.upload_profile_image(alice, MediaUpload("me.jpg", "image/jpeg", b"\xff\xd8"))
    assert second["profile_img"] != first["profile_img"]
    assert not os.path.exists(first_path)
    assert services.db["user"].find_one({"username": "alice"})["profile_img"] == second["profile_img"]
