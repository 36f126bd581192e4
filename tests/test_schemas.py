from datetime import datetime, timezone

import pytest
from bson import ObjectId

from schemas import Group, Like, Post, Reply, Thread, User, map_documents, normalize_answer

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def group_doc(**overrides):
    doc = {
        "_id": ObjectId(),
        "title": "Sunrise on the Reaping",
        "author": "Suzanne Collins",
        "image_url": "https://example.com/cover.jpg",
        "owner_id": "u1",
        "moderator_ids": ["u1"],
        "member_ids": ["u1", "u2"],
        "moderation_question": "Which district is Haymitch from?",
        "correct_answer": "District 12",
        "created_at": NOW,
        "updated_at": NOW,
    }
    doc.update(overrides)
    return doc


class TestFailClosedMapping:
    def test_post_missing_required_field_is_dropped(self):
        docs = [
            {"_id": ObjectId(), "author": "alice", "title": "Hi", "body": "First", "created_at": NOW},
            {"_id": ObjectId(), "author": "bob", "body": "No title", "created_at": NOW},
            {"_id": ObjectId(), "author": "carol", "title": "Later", "body": "Third", "created_at": NOW},
        ]
        posts = map_documents(Post, docs)
        assert [p.author for p in posts] == ["alice", "carol"]

    def test_wrong_type_is_dropped_not_coerced(self):
        doc = {"_id": ObjectId(), "group_id": "g", "author_id": "u", "content": "x",
               "like_count": "3", "reply_count": 0, "created_at": NOW}
        assert Thread.from_document(doc) is None

    def test_timestamp_must_be_a_datetime(self):
        doc = {"_id": ObjectId(), "thread_id": "t", "user_id": "u", "created_at": "2025-06-01"}
        assert Like.from_document(doc) is None

    def test_missing_document_maps_to_none(self):
        assert Group.from_document(None) is None
        assert Group.from_document({}) is None

    def test_id_is_stringified(self):
        oid = ObjectId()
        group = Group.from_document(group_doc(_id=oid))
        assert group.id == str(oid)

    def test_reply_without_optional_fields(self):
        doc = {"_id": ObjectId(), "thread_id": "t", "username": "bob", "content": "Agreed", "created_at": NOW}
        reply = Reply.from_document(doc)
        assert reply.author_id is None
        assert reply.avatar_url is None

    def test_group_moderators_default_to_empty(self):
        doc = group_doc()
        del doc["moderator_ids"]
        assert Group.from_document(doc).moderator_ids == []


class TestUser:
    def base(self, **overrides):
        doc = {"_id": ObjectId(), "username": "brooke", "avatar_url": "", "group_ids": []}
        doc.update(overrides)
        return doc

    def test_display_name_falls_back_to_username(self):
        assert User.from_document(self.base()).display_name == "brooke"
        assert User.from_document(self.base(display_name="   ")).display_name == "brooke"

    def test_display_name_kept_when_set(self):
        assert User.from_document(self.base(display_name="Brooke B.")).display_name == "Brooke B."

    def test_group_ids_required(self):
        doc = self.base()
        del doc["group_ids"]
        assert User.from_document(doc) is None

    def test_password_hash_never_mapped(self):
        user = User.from_document(self.base(password_hash="salt$digest"))
        assert "password_hash" not in user.model_dump()


class TestModerationGate:
    @pytest.mark.parametrize("answer", [
        "District 12",
        "district 12",
        "  DISTRICT 12  ",
        "district   12",
        "District\t12\n",
    ])
    def test_answer_is_case_and_whitespace_insensitive(self, answer):
        assert Group.from_document(group_doc()).accepts_answer(answer)

    @pytest.mark.parametrize("answer", ["District 13", "District12", "", "12"])
    def test_wrong_answer_rejected(self, answer):
        assert not Group.from_document(group_doc()).accepts_answer(answer)

    def test_normalize_answer(self):
        assert normalize_answer("  The   Capitol ") == "the capitol"

    def test_membership(self):
        group = Group.from_document(group_doc())
        assert group.has_member("u2")
        assert not group.has_member("u3")
        assert not group.has_member(None)

    def test_owner_counts_as_moderator(self):
        group = Group.from_document(group_doc(moderator_ids=[]))
        assert group.has_moderator("u1")
        assert not group.has_moderator("u2")

    def test_correct_answer_not_serialized(self):
        dumped = Group.from_document(group_doc()).model_dump()
        assert "correct_answer" not in dumped
        assert dumped["moderation_question"] == "Which district is Haymitch from?"


def test_like_key_is_per_thread_and_user():
    assert Like.key("t1", "u1") == Like.key("t1", "u1")
    assert Like.key("t1", "u1") != Like.key("t1", "u2")
    assert Like.key("t1", "u1") != Like.key("t2", "u1")
