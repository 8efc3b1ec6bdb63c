from __future__ import annotations

import pytest

from core.errors import PipelineError
from core.filters import compile_filter, equality_fields, referenced_fields


CHAT = {
    "_id": "c1",
    "participants": [
        {"alias": "Ana", "active": True},
        {"alias": "Seba", "active": False},
    ],
}

MESSAGE = {"_id": "m1", "chat_id": "c1", "type": "public", "sender": "Ana", "timestamp": 5}


def test_equality_matches_any_array_element() -> None:
    assert compile_filter({"participants.alias": "Seba"})(CHAT)
    assert not compile_filter({"participants.alias": "Lucia"})(CHAT)


def test_elem_match_requires_one_element_to_satisfy_all_conditions() -> None:
    # Without $elemMatch the conditions may be met by different participants.
    assert compile_filter({"participants.alias": "Seba", "participants.active": True})(CHAT)
    assert not compile_filter(
        {"participants": {"$elemMatch": {"alias": "Seba", "active": True}}}
    )(CHAT)
    assert compile_filter({"participants": {"$elemMatch": {"alias": "Ana", "active": True}}})(CHAT)


def test_or_and_comparisons() -> None:
    private = {"chat_id": "c1", "type": "private", "sender": "Seba", "recipient": "Ana", "timestamp": 2}
    query = {"type": "private", "$or": [{"sender": "Ana"}, {"recipient": "Ana"}]}
    assert compile_filter(query)(private)
    assert not compile_filter(query)(MESSAGE)

    assert compile_filter({"timestamp": {"$gt": 4, "$lte": 5}})(MESSAGE)
    assert not compile_filter({"timestamp": {"$lt": 5}})(MESSAGE)
    assert compile_filter({"sender": {"$in": ["Ana", "Seba"]}})(MESSAGE)
    assert compile_filter({"sender": {"$nin": ["Seba"]}})(MESSAGE)


def test_null_equality_matches_missing_field() -> None:
    assert compile_filter({"recipient": None})(MESSAGE)
    assert compile_filter({"recipient": {"$exists": False}})(MESSAGE)
    assert not compile_filter({"sender": {"$exists": False}})(MESSAGE)


def test_incomparable_values_do_not_match() -> None:
    assert not compile_filter({"timestamp": {"$gt": "later"}})(MESSAGE)


def test_unknown_operator_fails_at_compile_time() -> None:
    with pytest.raises(PipelineError):
        compile_filter({"sender": {"$regex": "^A"}})
    with pytest.raises(PipelineError):
        compile_filter({"$nor": [{"sender": "Ana"}]})


def test_equality_fields_ignore_disjunctions() -> None:
    fields = equality_fields(
        {"chat_id": "c1", "type": "private", "$or": [{"sender": "Ana"}, {"recipient": "Ana"}]}
    )
    assert fields == {"chat_id": "c1", "type": "private"}


def test_equality_fields_expand_elem_match() -> None:
    fields = equality_fields({"participants": {"$elemMatch": {"alias": "Ana", "active": True}}})
    assert fields == {"participants.alias": "Ana", "participants.active": True}


def test_referenced_fields_cover_nested_branches() -> None:
    paths = referenced_fields(
        {"chat_id": "c1", "$or": [{"sender": "Ana"}, {"recipient": {"$eq": "Ana"}}]}
    )
    assert paths == {"chat_id", "sender", "recipient"}
