import pytest
from bson import ObjectId

from errors import NotFound, ValidationFailed
from notifications import like_message


@pytest.fixture
def people(make_user):
    return make_user("Alice Smith", "alice"), make_user("Bob Jones", "bob")


@pytest.fixture
def post_id(services, people):
    alice, _ = people
    return services.posts.create(alice, "hello world")["id"]


def test_create_validates_type_and_post(services, people, post_id):
    alice, bob = people
    with pytest.raises(ValidationFailed):
        services.notifications.create(bob, alice, "poke")
    with pytest.raises(ValidationFailed):
        services.notifications.create(bob, alice, "like")
    with pytest.raises(ValidationFailed):
        services.notifications.create(bob, alice, "comment")

    services.notifications.create(bob, alice, "follow")
    services.notifications.create(bob, alice, "like", post_id)
    services.notifications.create(bob, alice, "like", post_id)
    assert services.notifications.unread_count(alice) == 3


def test_list_is_newest_first_and_populated(services, people, post_id):
    alice, bob = people
    services.notifications.create(bob, alice, "follow")
    services.notifications.create(bob, alice, "comment", post_id, "Bob Jones commented on your post")

    result = services.notifications.list(alice)
    types = [n["type"] for n in result["notifications"]]
    assert types == ["comment", "follow"]

    first = result["notifications"][0]
    assert first["from_user"]["username"] == "bob"
    assert first["post"]["text"] == "hello world"
    assert set(first["post"]) == {"id", "text", "img"}
    assert result["pagination"]["total_notifications"] == 2


def test_list_paginates(services, people):
    alice, bob = people
    for _ in range(5):
        services.notifications.create(bob, alice, "follow")
    page = services.notifications.list(alice, page=2, limit=2)
    assert len(page["notifications"]) == 2
    assert page["pagination"]["total_pages"] == 3
    assert page["pagination"]["has_more"] is True

    with pytest.raises(ValidationFailed):
        services.notifications.list(alice, page=0)
    with pytest.raises(ValidationFailed):
        services.notifications.list(alice, limit=0)


def test_mark_all_read_leaves_read_ones_alone(services, people):
    alice, bob = people
    ids = [services.notifications.create(bob, alice, "follow") for _ in range(5)]
    for notification_id in ids[:2]:
        services.notifications.mark_read(notification_id, alice)
    before = {
        str(n["_id"]): n["updated_at"]
        for n in services.db["notification"].find({"read": True})
    }
    assert services.notifications.unread_count(alice) == 3

    assert services.notifications.mark_all_read(alice) == 3
    assert services.notifications.unread_count(alice) == 0
    for notification_id in ids[:2]:
        stored = services.db["notification"].find_one({"_id": ObjectId(notification_id)})
        assert stored["read"] is True
        assert stored["updated_at"] == before[notification_id]


def test_mark_read_is_idempotent_and_scoped(services, people):
    alice, bob = people
    notification_id = services.notifications.create(bob, alice, "follow")

    services.notifications.mark_read(notification_id, alice)
    services.notifications.mark_read(notification_id, alice)
    assert services.notifications.unread_count(alice) == 0

    with pytest.raises(NotFound):
        services.notifications.mark_read(notification_id, bob)
    with pytest.raises(NotFound):
        services.notifications.mark_read("bogus", alice)


def test_delete_is_scoped_to_recipient(services, people):
    alice, bob = people
    notification_id = services.notifications.create(bob, alice, "follow")

    with pytest.raises(NotFound):
        services.notifications.delete(notification_id, bob)
    services.notifications.delete(notification_id, alice)
    assert services.notifications.list(alice)["notifications"] == []


def test_delete_all(services, people):
    alice, bob = people
    services.notifications.create(bob, alice, "follow")
    services.notifications.create(alice, bob, "follow")
    assert services.notifications.delete_all(alice) == 1
    assert services.notifications.unread_count(bob) == 1


def test_like_message_wording():
    liker = {"full_name": "Bob Jones", "username": "bob"}
    assert like_message(liker, 1) == "Bob Jones liked your post"
    assert like_message(liker, 2) == "Bob Jones and 1 other liked your post"
    assert like_message(liker, 4) == "Bob Jones and 3 others liked your post"
    assert like_message({"username": "bob"}, 1) == "bob liked your post"
