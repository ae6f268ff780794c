"""Tests for the conversation driver (agent loop)."""

import asyncio

import pytest

import crud
from agent import DRAFT_REFUSAL, ConversationDriver, normalize_history, strip_thinking, validate_turn_pairing
from bedrock_client import ModelResponse
from conftest import TODAY, ScriptedProvider, text_response, tool_response
from errors import InvalidConversationError, IterationExhaustedError, ProviderTimeoutError, StoreUnavailableError
from schemas import ConversationTurn


def _driver(provider, reminder_store, retrieval, max_iterations=5):
    return ConversationDriver(provider, reminder_store, retrieval, max_iterations=max_iterations)


class TestLoop:

    @pytest.mark.asyncio
    async def test_plain_answer(self, reminder_store, retrieval):
        provider = ScriptedProvider([text_response("Hi! How can I help?")])

        response = await _driver(provider, reminder_store, retrieval).converse("hello", 'user-1', client_date=TODAY)

        assert response.message == "Hi! How can I help?"
        assert response.iterations == 1
        assert response.tool_calls == []
        assert response.state == "end_turn"
        assert provider.requests[0] == [{'role': 'user', 'content': [{'text': 'hello'}]}]

    @pytest.mark.asyncio
    async def test_tool_results_pair_with_tool_uses_in_order(self, reminder_store, retrieval, db):
        provider = ScriptedProvider([
            tool_response(
                ("t1", "create_reminder", {"title": "Gym", "date": "2025-06-12", "time": "07:00"}),
                ("t2", "launch_rocket", {}),
                ("t3", "search_reminders", {"query": "tomorrow"}),
                text="<thinking>two things</thinking>",
            ),
            text_response("<thinking>all done</thinking>Saved your gym reminder."),
        ])

        response = await _driver(provider, reminder_store, retrieval).converse(
            "add gym tomorrow 7am and show tomorrow", 'user-1', client_date=TODAY)

        second_call = provider.requests[1]
        assert second_call[1]['role'] == 'assistant'
        results = second_call[2]
        assert results['role'] == 'user'
        assert [b['toolResult']['toolUseId'] for b in results['content']] == ['t1', 't2', 't3']
        assert results['content'][1]['toolResult']['status'] == 'error'
        assert results['content'][1]['toolResult']['content'][0]['json']['error'] == "Unknown tool: launch_rocket"
        validate_turn_pairing(second_call)

        assert response.message == "Saved your gym reminder."
        assert response.iterations == 2
        assert [c.tool_name for c in response.tool_calls] == ['create_reminder', 'launch_rocket', 'search_reminders']
        assert all(c.iteration_index == 1 for c in response.tool_calls)
        assert crud.get_reminders_count(db, 'user-1') == 1

    @pytest.mark.asyncio
    async def test_empty_final_text_defaults(self, reminder_store, retrieval):
        provider = ScriptedProvider([text_response("<thinking>nothing to say</thinking>")])
        response = await _driver(provider, reminder_store, retrieval).converse("ok", 'user-1', client_date=TODAY)
        assert response.message == "Done!"

    @pytest.mark.asyncio
    async def test_unexpected_stop_reason_returns_warning(self, reminder_store, retrieval):
        provider = ScriptedProvider([text_response("Partial answer", stop_reason="max_tokens")])

        response = await _driver(provider, reminder_store, retrieval).converse("hi", 'user-1', client_date=TODAY)

        assert response.message == "Partial answer"
        assert "max_tokens" in response.warning

    @pytest.mark.asyncio
    async def test_iteration_bound(self, reminder_store, retrieval):
        provider = ScriptedProvider([
            tool_response((f"t{i}", "search_reminders", {"query": "today"})) for i in range(3)
        ])

        with pytest.raises(IterationExhaustedError) as exc_info:
            await _driver(provider, reminder_store, retrieval, max_iterations=3).converse(
                "loop forever", 'user-1', client_date=TODAY)

        assert len(provider.requests) == 3
        assert exc_info.value.iterations == 3
        assert [c['iteration_index'] for c in exc_info.value.tool_calls] == [1, 2, 3]
        assert exc_info.value.to_dict()['error'] == 'iteration_exhausted'
        assert exc_info.value.to_dict()["state"] == "exhausted"

    @pytest.mark.asyncio
    async def test_provider_timeout_is_fatal(self, reminder_store, retrieval):
        class SlowProvider:
            calls = 0

            async def converse(self, system_prompt, messages, tools):
                self.calls += 1
                raise ProviderTimeoutError("too slow")

        provider = SlowProvider()
        with pytest.raises(ProviderTimeoutError):
            await _driver(provider, reminder_store, retrieval).converse("hi", 'user-1', client_date=TODAY)
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_failed_batch_settles_every_call_before_raising(self, reminder_store, db):
        class SlowInsertStore:
            def __init__(self, inner):
                self.inner = inner

            async def insert(self, *args, **kwargs):
                await asyncio.sleep(0.05)
                return await self.inner.insert(*args, **kwargs)

        class DownRetrieval:
            async def search(self, *args, **kwargs):
                raise StoreUnavailableError("database is down")

        provider = ScriptedProvider([
            tool_response(
                ("c1", "create_reminder", {"title": "Pay rent", "date": "2025-06-12"}),
                ("s1", "search_reminders", {"query": "rent"}),
            ),
        ])
        driver = _driver(provider, SlowInsertStore(reminder_store), DownRetrieval())

        with pytest.raises(StoreUnavailableError) as exc_info:
            await driver.converse("add pay rent tomorrow and find rent", 'user-1', client_date=TODAY)

        # the create finished before the failure surfaced, and is reported
        assert crud.get_reminders_count(db, 'user-1') == 1
        body = exc_info.value.to_dict()
        assert body["error"] == "store_unavailable"
        assert [c["tool_name"] for c in body["tool_calls"]] == ["create_reminder"]
        assert body["tool_calls"][0]["result"]["success"] is True

    @pytest.mark.asyncio
    async def test_tool_blocks_are_dispatched_whatever_the_stop_reason(self, reminder_store, retrieval):
        mislabelled = tool_response(("s1", "search_reminders", {"query": "today"}))
        provider = ScriptedProvider([
            ModelResponse(stop_reason="end_turn", message=mislabelled.message),
            text_response("Nothing today."),
        ])

        response = await _driver(provider, reminder_store, retrieval).converse(
            "what's on today", 'user-1', client_date=TODAY)

        assert response.message == "Nothing today."
        assert response.iterations == 2
        assert [c.tool_name for c in response.tool_calls] == ["search_reminders"]
        validate_turn_pairing(provider.requests[1])
        assert provider.requests[1][2]['content'][0]['toolResult']['toolUseId'] == "s1"


class TestDraftStop:

    @pytest.mark.asyncio
    async def test_draft_ends_loop_and_refuses_mutations(self, reminder_store, retrieval, db):
        provider = ScriptedProvider([
            tool_response(
                ("d1", "draft_reminder", {"title": "Call mom", "date": "2025-06-12", "time": "18:00"}),
                ("c1", "create_reminder", {"title": "Call mom", "date": "2025-06-12", "time": "18:00"}),
            ),
        ])

        response = await _driver(provider, reminder_store, retrieval).converse(
            "remind me to call mom tomorrow at 6pm", 'user-1', client_date=TODAY)

        assert len(provider.requests) == 1
        assert response.state == "end_turn"
        assert response.iterations == 1
        assert response.draft == {"title": "Call mom", "date": "2025-06-12", "time": "18:00"}
        assert "Call mom" in response.message
        refused = response.tool_calls[1]
        assert refused.tool_name == "create_reminder"
        assert refused.result["success"] is False
        assert crud.get_reminders_count(db, 'user-1') == 0

    @pytest.mark.asyncio
    async def test_draft_refuses_search_in_same_batch(self, reminder_store, retrieval, embedder, completion):
        provider = ScriptedProvider([
            tool_response(
                ("s1", "search_reminders", {"query": "call mom"}),
                ("d1", "draft_reminder", {"title": "Call mom", "date": "2025-06-12"}),
            ),
        ])

        response = await _driver(provider, reminder_store, retrieval).converse(
            "remind me to call mom tomorrow", 'user-1', client_date=TODAY)

        assert response.draft == {"title": "Call mom", "date": "2025-06-12"}
        assert response.tool_calls[0].tool_name == "search_reminders"
        assert response.tool_calls[0].result == {"success": False, "error": DRAFT_REFUSAL}
        assert embedder.calls == []
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_confirmed_create_after_draft_history(self, reminder_store, retrieval, db):
        history = [
            ConversationTurn(role='user', content="remind me to call mom tomorrow"),
            ConversationTurn(role='assistant', content="Here's a draft: \"Call mom\" on 2025-06-12. Want me to save it?"),
        ]
        provider = ScriptedProvider([
            tool_response(("c1", "create_reminder", {"title": "Call mom", "date": "2025-06-12"})),
            text_response("Saved!"),
        ])

        response = await _driver(provider, reminder_store, retrieval).converse(
            "yes", 'user-1', client_date=TODAY, conversation_history=history)

        assert response.message == "Saved!"
        assert response.draft is None
        assert [m['role'] for m in provider.requests[0]] == ['user', 'assistant', 'user']
        assert crud.get_reminders_count(db, 'user-1') == 1


class TestHistory:

    def test_normalize_drops_leading_assistant_and_merges(self):
        turns = [
            ConversationTurn(role='assistant', content="Welcome!"),
            ConversationTurn(role='user', content="first"),
            ConversationTurn(role='user', content="second"),
            ConversationTurn(role='assistant', content=""),
        ]

        messages = normalize_history(turns, "third")

        assert messages == [{'role': 'user', 'content': [{'text': 'first'}, {'text': 'second'}, {'text': 'third'}]}]

    def test_unanswered_tool_use_is_rejected(self):
        messages = [
            {'role': 'user', 'content': [{'text': 'hi'}]},
            {'role': 'assistant', 'content': [{'toolUse': {'toolUseId': 'a', 'name': 'search_reminders', 'input': {}}}]},
            {'role': 'user', 'content': [{'text': 'never mind'}]},
        ]
        with pytest.raises(InvalidConversationError):
            validate_turn_pairing(messages)

    def test_out_of_order_results_are_rejected(self):
        messages = [
            {'role': 'user', 'content': [{'text': 'hi'}]},
            {'role': 'assistant', 'content': [
                {'toolUse': {'toolUseId': 'a', 'name': 'x', 'input': {}}},
                {'toolUse': {'toolUseId': 'b', 'name': 'y', 'input': {}}},
            ]},
            {'role': 'user', 'content': [
                {'toolResult': {'toolUseId': 'b', 'content': []}},
                {'toolResult': {'toolUseId': 'a', 'content': []}},
            ]},
        ]
        with pytest.raises(InvalidConversationError):
            validate_turn_pairing(messages)

    @pytest.mark.asyncio
    async def test_driver_rejects_bad_history_before_calling_model(self, reminder_store, retrieval):
        provider = ScriptedProvider([text_response("unused")])
        history = [
            ConversationTurn(role='user', content="hi"),
            ConversationTurn(role='assistant', content=[
                {'toolUse': {'toolUseId': 'a', 'name': 'search_reminders', 'input': {}}}
            ]),
        ]

        with pytest.raises(InvalidConversationError):
            await _driver(provider, reminder_store, retrieval).converse(
                "and?", 'user-1', client_date=TODAY, conversation_history=history)
        assert provider.requests == []


def test_strip_thinking():
    assert strip_thinking("<thinking>plan</thinking>Answer") == "Answer"
    assert strip_thinking("Answer <thinking>unterminated") == "Answer"
    assert strip_thinking("") == ""
