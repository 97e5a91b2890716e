"""
Tests for request validation, session keys and recommendation generation.
"""

import concurrent.futures
import threading

import pytest
import torch

from genrec.backends import TorchRankingBackend, select_items
from genrec.backends.torch_ranking import MessageEncoder
from genrec.errors import InvalidRequestError, StatusCode
from genrec.runtime.executor import RequestExecutor, derive_session_key, format_recommendation
from genrec.runtime.generation_cache import GenerationCache
from genrec.types import ChatMessage, InitOptions, Request, RequestParams

from conftest import MODEL_ID, NUM_ITEMS


def _user(content):
    return ChatMessage(role="user", content=content)


# Session keys and formatting
def test_session_key_stable_as_conversation_grows():
    first = [_user("I liked 12")]
    grown = first + [ChatMessage("assistant", "Recommended items: 3"), _user("more please")]
    assert derive_session_key(first, RequestParams()) == derive_session_key(grown, RequestParams())
    assert derive_session_key([_user("other")], RequestParams()) != derive_session_key(first, RequestParams())


def test_session_id_wins():
    assert derive_session_key([_user("x")], RequestParams(session_id="abc")) == "abc"
    assert derive_session_key([], RequestParams(session_id="abc")) == "abc"


def test_session_key_requires_context():
    with pytest.raises(InvalidRequestError):
        derive_session_key([], RequestParams())


def test_format_recommendation():
    assert format_recommendation([12, 7, 3]) == "Recommended items: 12, 7, 3"
    assert format_recommendation([]) == "No recommendations available."


# Message encoding and selection
def test_message_encoder():
    encoder = MessageEncoder(NUM_ITEMS)
    assert encoder.encode_message("system", "12 be helpful") == []
    assert encoder.encode_message("assistant", "Recommended items: 5, 9") == [5, 9]
    user_items = encoder.encode_message("user", "7 jazz")
    assert user_items[0] == 7
    assert len(user_items) == 2
    assert 0 <= user_items[1] < NUM_ITEMS
    assert encoder.encode_message("user", "jazz") == encoder.encode_message("user", "JAZZ")



def test_backend_counters_under_concurrency(ready_handle):
    backend = TorchRankingBackend()
    messages = [_user("1 2 3")]

    def work():
        for _ in range(200):
            backend.encode(ready_handle.binding, messages)

    threads = [threading.Thread(target=work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert backend.get_stats()["items_encoded"] == 8 * 200 * 3

def test_select_items_deterministic_tie_break():
    scores = torch.tensor([1.0, 3.0, 3.0, 2.0])
    picked = select_items(scores, [40, 30, 10, 20], k=3)
    assert [i for i, _ in picked] == [10, 30, 20]


def test_select_items_sampling_is_seeded():
    scores = torch.arange(20, dtype=torch.float32)
    candidates = list(range(20))
    a = select_items(scores, candidates, k=5, temperature=1.0, generator=torch.Generator().manual_seed(3))
    b = select_items(scores, candidates, k=5, temperature=1.0, generator=torch.Generator().manual_seed(3))
    assert a == b
    assert len({i for i, _ in a}) == 5


def test_select_items_top_k():
    scores = torch.arange(10, dtype=torch.float32)
    picked = select_items(scores, list(range(10)), k=3, temperature=2.0, top_k=3,
                          generator=torch.Generator().manual_seed(0))
    assert {i for i, _ in picked} == {7, 8, 9}


# Validation
@pytest.fixture
def executor(ready_handle):
    workers = concurrent.futures.ThreadPoolExecutor(max_workers=2)
    yield RequestExecutor(
        binding=ready_handle.binding,
        cache=GenerationCache(),
        backend=TorchRankingBackend(),
        workers=workers,
    )
    workers.shutdown(wait=True)


@pytest.mark.parametrize("request_kwargs", [
    dict(messages=None, messages_count=3),
    dict(messages=[_user("1")], messages_count=2),
    dict(messages=[_user("1")], messages_count=-1),
    dict(messages=[ChatMessage("user", "")], messages_count=1),
    dict(messages=[ChatMessage("", "hi")], messages_count=1),
    dict(messages=[ChatMessage("tool", "hi")], messages_count=1),
    dict(messages=[{"role": "user", "content": "hi"}], messages_count=1),
    dict(messages=[], messages_count=0),
    dict(messages=[_user("1")], messages_count=1, model_id="other-model"),
    dict(messages=[_user("1")], messages_count=1, params=RequestParams(max_new_items=0)),
    dict(messages=[_user("1")], messages_count=1, params=RequestParams(candidate_items=[NUM_ITEMS])),
    dict(messages=[_user("1")], messages_count=1, params=RequestParams(candidate_items=["a"])),
    dict(messages=[_user("1")], messages_count=1, params=RequestParams(max_new_items=None)),
    dict(messages=[_user("1")], messages_count=1, params=RequestParams(temperature="hot")),
    dict(messages=[_user("1")], messages_count="1"),
])
def test_validate_rejects(executor, request_kwargs):
    kwargs = {"model_id": MODEL_ID, **request_kwargs}
    with pytest.raises(InvalidRequestError):
        executor.validate(Request(**kwargs))


def test_validate_uses_messages_count_prefix(executor):
    messages = [_user("1"), _user("2"), ChatMessage("bogus", "")]
    assert executor.validate(Request(MODEL_ID, messages, 2)) == messages[:2]


def test_execute_counts_invalid(executor):
    with pytest.raises(InvalidRequestError):
        executor.execute(Request(MODEL_ID, None, 3))
    assert executor.get_stats()["invalid"] == 1


# Generation through a handle
def test_recommendations_exclude_seen(ready_handle):
    response = ready_handle.chat_completions(MODEL_ID, [_user("12 7")], 1)
    assert response.status == StatusCode.SUCCESS
    choice = response.choices[0]
    assert choice.message.role == "assistant"
    assert choice.message.content.startswith("Recommended items: ")
    assert len(choice.items) == 10
    assert 12 not in choice.items and 7 not in choice.items
    assert choice.scores == sorted(choice.scores, reverse=True)


def test_candidate_items_restrict_pool(ready_handle):
    params = RequestParams(candidate_items=[1, 2, 3])
    response = ready_handle.chat_completions(MODEL_ID, [_user("2")], 1, 0, params)
    assert sorted(response.choices[0].items) == [1, 3]


def test_empty_candidate_pool(ready_handle):
    params = RequestParams(candidate_items=[5])
    response = ready_handle.chat_completions(MODEL_ID, [_user("5")], 1, 0, params)
    assert response.status == StatusCode.SUCCESS
    assert response.choices[0].items == []
    assert response.choices[0].message.content == "No recommendations available."


def test_multiple_sampled_choices_are_reproducible(ready_handle):
    def run(session):
        params = RequestParams(n=3, temperature=1.0, seed=7, session_id=session, max_new_items=5)
        return ready_handle.chat_completions(MODEL_ID, [_user("4 8")], 1, 0, params)

    first, second = run("x1"), run("x2")
    assert len(first.choices) == 3
    assert [c.index for c in first.choices] == [0, 1, 2]
    assert [c.items for c in first.choices] == [c.items for c in second.choices]


def test_multi_turn_appends_only_new_messages(ready_handle):
    conversation = [_user("1 2")]
    ready_handle.chat_completions(MODEL_ID, conversation, 1)
    conversation += [ChatMessage("assistant", "Recommended items: 9"), _user("3")]
    response = ready_handle.chat_completions(MODEL_ID, conversation, 3)
    assert response.ok

    key = (MODEL_ID, derive_session_key(conversation, RequestParams()))
    entry = ready_handle.cache.get(key)
    assert entry.behavior_sequence == [1, 2, 9, 3]
    assert entry.messages_absorbed == 3
    assert entry.turns == 2


def test_session_id_without_messages(ready_handle):
    params = RequestParams(session_id="returning-user")
    ready_handle.chat_completions(MODEL_ID, [_user("10 11")], 1, 0, params)
    response = ready_handle.chat_completions(MODEL_ID, None, 0, 0, params)
    assert response.ok
    assert 10 not in response.choices[0].items


def test_generation_cache_disabled(probe, model_dir):
    from genrec.config import GenRecConfig
    from genrec.runtime.lifecycle import Handle

    h = Handle(device_probe=probe, config=GenRecConfig())
    assert h.initialize(model_dir, "cuda:0", InitOptions(enable_generation_cache=False))
    response = h.chat_completions(MODEL_ID, [_user("1 2")], 1)
    assert response.ok
    assert len(h.cache) == 0
    h.destroy()
