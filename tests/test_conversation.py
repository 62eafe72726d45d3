"""Tests for conversation state, stores and the conversation manager."""

import asyncio

import pytest

from shared.models import MissingParam, OutcomeKind, PendingTool, Phase, ToolDescriptor


def _collecting_state():
    from orchestrator.state import ConversationState

    state = ConversationState()
    state.begin_collection(
        [ToolDescriptor(name="book_flight", required_parameters=("origin", "destination"))],
        [
            MissingParam(tool="book_flight", parameter="origin", description="departure city"),
            MissingParam(tool="book_flight", parameter="destination", description="arrival city"),
        ],
        "book me a flight"
    )
    return state


class TestConversationState:
    """Tests for ConversationState transitions and invariants."""

    def test_initial_state(self):
        """Test a new state is normal and empty."""
        from orchestrator.state import ConversationState

        state = ConversationState()

        assert state.phase == Phase.NORMAL
        assert state.is_initial
        state.check_invariants()

    def test_fill_parameters(self):
        """Test parameters are filled in order until none is missing."""
        state = _collecting_state()

        assert state.fill_parameter("Paris") == "origin"
        assert not state.all_parameters_filled
        state.check_invariants()

        assert state.fill_parameter("Rome") == "destination"
        assert state.all_parameters_filled
        assert state.collected_params == {"origin": "Paris", "destination": "Rome"}

    def test_fill_shared_parameter(self):
        """Test a value fills every tool asking for the same parameter."""
        from orchestrator.state import ConversationState

        state = ConversationState()
        state.begin_collection(
            [ToolDescriptor(name="a"), ToolDescriptor(name="b")],
            [
                MissingParam(tool="a", parameter="path", description="path"),
                MissingParam(tool="b", parameter="path", description="path"),
            ],
            "msg"
        )

        state.fill_parameter("/tmp")

        assert state.all_parameters_filled

    def test_fill_without_missing_param(self):
        """Test filling with nothing missing is an invariant error."""
        from orchestrator.state import ConversationState, StateInvariantError

        with pytest.raises(StateInvariantError):
            ConversationState().fill_parameter("x")

    def test_reset_is_idempotent(self):
        """Test resetting a normal state leaves it unchanged."""
        from orchestrator.state import ConversationState

        state = ConversationState()
        before = state.model_copy(deep=True)

        state.reset()
        state.reset()

        assert state == before

    def test_reset_clears_everything(self):
        """Test reset returns to the initial state as a whole."""
        state = _collecting_state()
        state.fill_parameter("Paris")

        state.reset()

        assert state.is_initial

    def test_invariant_violations(self):
        """Test unreachable states are detected."""
        from orchestrator.state import ConversationState, StateInvariantError

        bad_states = [
            ConversationState(phase=Phase.COLLECTING_PARAMS),
            ConversationState(
                missing_params=[MissingParam(tool="t", parameter="p", description="p")]
            ),
            ConversationState(pending_tools=[PendingTool(name="t")], original_message="m"),
            ConversationState(phase=Phase.EXECUTING_TOOLS, pending_tools=[PendingTool(name="t")]),
        ]

        for state in bad_states:
            with pytest.raises(StateInvariantError):
                state.check_invariants()

    def test_json_round_trip(self):
        """Test state survives serialization."""
        from orchestrator.state import ConversationState

        state = _collecting_state()
        restored = ConversationState.model_validate_json(state.model_dump_json())

        assert restored == state


class TestStateStores:
    """Tests for state store implementations."""

    @pytest.mark.asyncio
    async def test_memory_store(self):
        """Test saving, loading and deleting."""
        from orchestrator.state import InMemoryStateStore

        store = InMemoryStateStore()
        state = _collecting_state()

        assert (await store.load("c1")).is_initial

        await store.save("c1", state)
        loaded = await store.load("c1")
        assert loaded == state
        assert loaded is not state

        assert await store.delete("c1") is True
        assert await store.delete("c1") is False

    @pytest.mark.asyncio
    async def test_memory_store_expiry(self):
        """Test expired states load as initial and are cleaned up."""
        from datetime import timedelta
        from orchestrator.state import InMemoryStateStore

        store = InMemoryStateStore(ttl_minutes=5)
        await store.save("old", _collecting_state())
        await store.save("fresh", _collecting_state())

        payload, saved_at = store._states["old"]
        store._states["old"] = (payload, saved_at - timedelta(minutes=10))

        assert await store.cleanup_expired() == 1
        assert len(store) == 1
        assert (await store.load("old")).is_initial
        assert not (await store.load("fresh")).is_initial

    @pytest.mark.asyncio
    async def test_file_store(self, tmp_path):
        """Test the file store round trip."""
        from orchestrator.state import FileStateStore

        store = FileStateStore(tmp_path / "states")
        state = _collecting_state()

        await store.save("conv-1", state)

        assert (tmp_path / "states" / "conv-1.json").exists()
        assert await store.load("conv-1") == state
        assert (await store.load("unknown")).is_initial
        assert await store.delete("conv-1") is True
        assert await store.delete("conv-1") is False

    @pytest.mark.asyncio
    async def test_file_store_unsafe_ids(self, tmp_path):
        """Test ids that are not file-name safe are hashed."""
        from orchestrator.state import FileStateStore

        store = FileStateStore(tmp_path)
        await store.save("../../etc/passwd", _collecting_state())

        files = list(tmp_path.iterdir())
        assert len(files) == 1
        assert files[0].parent == tmp_path
        assert not (await store.load("../../etc/passwd")).is_initial

    @pytest.mark.asyncio
    async def test_file_store_corrupt(self, tmp_path):
        """Test corrupt files raise StateStoreError."""
        from orchestrator.state import FileStateStore, StateStoreError

        store = FileStateStore(tmp_path)
        (tmp_path / "broken.json").write_text("{not json")

        with pytest.raises(StateStoreError):
            await store.load("broken")

    @pytest.mark.asyncio
    async def test_file_store_undecodable(self, tmp_path):
        """Test files that are not UTF-8 raise StateStoreError."""
        from orchestrator.state import FileStateStore, StateStoreError

        store = FileStateStore(tmp_path)
        (tmp_path / "c1.json").write_bytes(b"\xff\xfe\x00garbage")

        with pytest.raises(StateStoreError):
            await store.load("c1")


class TestChatHistory:
    """Tests for ChatHistory."""

    @pytest.mark.asyncio
    async def test_append_and_list(self):
        """Test messages are kept in order."""
        from orchestrator.history import ChatHistory

        history = ChatHistory()
        await history.append_message("c1", "system", "Be nice")
        await history.append_message("c1", "user", "Hello")
        await history.append_message("c1", "assistant", "Hi there!")

        messages = await history.list_messages("c1", include_system=False)

        assert [(m.role, m.content) for m in messages] == [
            ("user", "Hello"), ("assistant", "Hi there!")
        ]
        assert len(await history.list_messages("c1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_message_limit(self):
        """Test messages are pruned when over limit, keeping system messages."""
        from orchestrator.history import ChatHistory

        history = ChatHistory(max_conversation_length=5)
        await history.append_message("c1", "system", "System")
        for i in range(10):
            await history.append_message("c1", "user", f"Message {i}")

        messages = await history.list_messages("c1")

        assert len(messages) == 5
        assert messages[0].role == "system"
        assert messages[-1].content == "Message 9"

    @pytest.mark.asyncio
    async def test_expiry(self):
        """Test expired conversations are dropped."""
        from datetime import timedelta
        from orchestrator.history import ChatHistory

        history = ChatHistory(conversation_ttl_minutes=5)
        await history.append_message("c1", "user", "Hello")
        history._updated_at["c1"] -= timedelta(minutes=10)

        assert await history.list_messages("c1") == []
        assert history.get_stats()["total_conversations"] == 0


class TestKeyedLock:
    """Tests for per-key locks."""

    @pytest.mark.asyncio
    async def test_locks_are_released(self):
        """Test idle keys do not keep a lock around."""
        from orchestrator.locks import KeyedLock

        locks = KeyedLock()

        async with locks.hold("a"):
            assert locks.locked("a")
            assert not locks.locked("b")

        assert len(locks) == 0


class InstrumentedStore:
    """In-memory store recording how many turns are between load and save."""

    def __init__(self):
        from orchestrator.state import InMemoryStateStore

        self.inner = InMemoryStateStore()
        self.active = 0
        self.max_active = 0
        self.order = []

    async def load(self, conversation_id):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.order.append(("load", conversation_id))
        return await self.inner.load(conversation_id)

    async def save(self, conversation_id, state):
        self.active -= 1
        self.order.append(("save", conversation_id))
        await self.inner.save(conversation_id, state)

    async def delete(self, conversation_id):
        return await self.inner.delete(conversation_id)


def _manager(orchestrator, store=None, **kwargs):
    from orchestrator.conversation import ConversationManager
    from orchestrator.state import InMemoryStateStore

    return ConversationManager(orchestrator, store=store or InMemoryStateStore(), **kwargs)


class TestConversationManager:
    """End-to-end tests of the orchestration state machine."""

    @pytest.mark.asyncio
    async def test_plain_answer(self, orchestrator, catalog):
        """Test a message needing no tools gets a direct answer."""
        manager = _manager(orchestrator)

        outcome = await manager.process_message("c1", "hello", catalog)

        assert outcome.kind == OutcomeKind.FINAL_ANSWER
        assert outcome.text == "Hello! How can I help you today?"
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_clarification_then_answer(self, orchestrator, catalog, mock_llm):
        """Test a missing parameter is asked for, then the tool runs."""
        manager = _manager(orchestrator)

        first = await manager.process_message("c1", "what should I wear", catalog)

        assert first.kind == OutcomeKind.CLARIFICATION
        assert "location" in first.text
        state = await manager.store.load("c1")
        assert state.phase == Phase.COLLECTING_PARAMS
        assert state.original_message == "what should I wear"

        second = await manager.process_message("c1", "Boston", catalog)

        assert second.kind == OutcomeKind.FINAL_ANSWER
        assert second.text == "Synthesized answer."
        assert "Sunny, 22C in Boston" in mock_llm.prompts[-1]
        assert 'The user asked: "what should I wear"' in mock_llm.prompts[-1]
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_two_parameter_loop(self, orchestrator, catalog):
        """Test every missing parameter is asked for, one per turn."""
        manager = _manager(orchestrator)

        first = await manager.process_message("c1", "book a flight", catalog)
        second = await manager.process_message("c1", "Paris", catalog)
        third = await manager.process_message("c1", "Rome", catalog)

        assert first.kind == OutcomeKind.CLARIFICATION
        assert "departure city" in first.text
        assert second.kind == OutcomeKind.CLARIFICATION
        assert "arrival city" in second.text
        assert third.kind == OutcomeKind.FINAL_ANSWER
        assert (await manager.store.load("c1")).phase == Phase.NORMAL

    @pytest.mark.asyncio
    async def test_cancel(self, orchestrator, catalog, mock_llm):
        """Test cancelling drops pending tools."""
        manager = _manager(orchestrator)
        await manager.process_message("c1", "what should I wear", catalog)

        mock_llm.set_next_response("cancel")
        outcome = await manager.process_message("c1", "forget it", catalog)

        assert outcome.kind == OutcomeKind.CANCELLED
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_new_topic(self, orchestrator, catalog, mock_llm):
        """Test a new topic abandons collection and is handled normally."""
        manager = _manager(orchestrator)
        await manager.process_message("c1", "what should I wear", catalog)

        mock_llm.set_next_response("new_topic")
        outcome = await manager.process_message("c1", "tell me a joke", catalog)

        assert outcome.kind == OutcomeKind.FINAL_ANSWER
        assert outcome.text == "Hello! How can I help you today?"
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_llm_outage_during_collection(self, orchestrator, catalog, mock_llm):
        """Test the heuristic keeps the value and the tool output is returned."""
        manager = _manager(orchestrator)
        await manager.process_message("c1", "what should I wear", catalog)

        mock_llm.fail_with(RuntimeError("down"))
        outcome = await manager.process_message("c1", "Boston", catalog)

        assert outcome.kind == OutcomeKind.FINAL_ANSWER
        assert outcome.text.startswith("Here is what I found:")
        assert "Sunny, 22C in Boston" in outcome.text

    @pytest.mark.asyncio
    async def test_partial_failure_is_final_answer(self, orchestrator, mock_llm):
        """Test one failing tool still yields a final answer."""
        from mcp_client.catalog import ToolCatalog
        from mcp_client.local import LocalToolProvider

        provider = LocalToolProvider()
        provider.register("fetch_data", lambda: "42 rows")

        def summarize():
            raise RuntimeError("model offline")

        provider.register("summarize", summarize)
        manager = _manager(orchestrator)

        outcome = await manager.process_message("c1", "make a report", ToolCatalog([provider]))

        assert outcome.kind == OutcomeKind.FINAL_ANSWER
        assert "[summarize] failed: model offline" in mock_llm.prompts[-1]
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_full_failure_is_error(self, orchestrator, mock_llm):
        """Test a chain where every tool fails yields an error outcome."""
        from mcp_client.catalog import ToolCatalog
        from mcp_client.local import LocalToolProvider
        from orchestrator import prompts

        provider = LocalToolProvider()
        provider.register("fetch_data", lambda: {"error": "database unreachable"})
        provider.register("summarize", lambda: {"error": "nothing to summarize"})
        manager = _manager(orchestrator)

        outcome = await manager.process_message("c1", "make a report", ToolCatalog([provider]))

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.text == prompts.ALL_TOOLS_FAILED
        assert not any("Tool results:" in prompt for prompt in mock_llm.prompts)
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_plain_answer_failure(self, orchestrator, catalog, mock_llm):
        """Test an unreachable LLM yields an error outcome."""
        manager = _manager(orchestrator)
        mock_llm.fail_with(RuntimeError("down"))

        outcome = await manager.process_message("c1", "hello", catalog)

        assert outcome.kind == OutcomeKind.ERROR
        assert "trouble reaching the assistant" in outcome.text

    @pytest.mark.asyncio
    async def test_empty_message(self, orchestrator, catalog):
        """Test empty messages are rejected."""
        outcome = await _manager(orchestrator).process_message("c1", "   ", catalog)

        assert outcome.kind == OutcomeKind.ERROR

    @pytest.mark.asyncio
    async def test_store_failure(self, orchestrator, catalog):
        """Test a failing save yields an error outcome."""
        from orchestrator.state import InMemoryStateStore, StateStoreError

        class FailingStore(InMemoryStateStore):
            async def save(self, conversation_id, state):
                raise StateStoreError("disk full")

        manager = _manager(orchestrator, store=FailingStore())

        outcome = await manager.process_message("c1", "what should I wear", catalog)

        assert outcome.kind == OutcomeKind.ERROR
        assert "try again" in outcome.text
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_unreadable_state_file(self, orchestrator, catalog, tmp_path):
        """Test an undecodable state file yields an error outcome."""
        from orchestrator.state import FileStateStore

        (tmp_path / "c1.json").write_bytes(b"\xff\xfe\x00garbage")
        manager = _manager(orchestrator, store=FileStateStore(tmp_path))

        outcome = await manager.process_message("c1", "hello", catalog)

        assert outcome.kind == OutcomeKind.ERROR
        assert "try again" in outcome.text

    @pytest.mark.asyncio
    async def test_store_raising_unexpected_errors(self, orchestrator, catalog):
        """Test any exception from a store yields an error outcome."""
        from orchestrator.state import InMemoryStateStore

        class BrokenLoadStore(InMemoryStateStore):
            async def load(self, conversation_id):
                raise RuntimeError("backend gone")

        class BrokenSaveStore(InMemoryStateStore):
            async def save(self, conversation_id, state):
                raise ConnectionError("connection reset")

        for store in (BrokenLoadStore(), BrokenSaveStore()):
            outcome = await _manager(orchestrator, store=store).process_message(
                "c1", "hello", catalog
            )

            assert outcome.kind == OutcomeKind.ERROR
            assert "try again" in outcome.text

    @pytest.mark.asyncio
    async def test_cancelled_turn_leaves_state(self, orchestrator, catalog, mock_llm):
        """Test cancelling a turn in flight keeps the stored state as it was."""
        manager = _manager(orchestrator)
        await manager.process_message("c1", "what should I wear", catalog)
        before = await manager.store.load("c1")
        assert before.phase == Phase.COLLECTING_PARAMS

        mock_llm.delay = 0.5
        turn = asyncio.create_task(manager.process_message("c1", "Boston", catalog))
        await asyncio.sleep(0.05)
        turn.cancel()

        with pytest.raises(asyncio.CancelledError):
            await turn

        assert await manager.store.load("c1") == before

    @pytest.mark.asyncio
    async def test_interrupted_execution(self, orchestrator, catalog):
        """Test a leftover executing phase is reset and the message handled."""
        from orchestrator.state import ConversationState

        manager = _manager(orchestrator)
        await manager.store.save("c1", ConversationState(
            phase=Phase.EXECUTING_TOOLS,
            pending_tools=[PendingTool(name="get_weather")],
            original_message="what should I wear"
        ))

        outcome = await manager.process_message("c1", "hello", catalog)

        assert outcome.kind == OutcomeKind.FINAL_ANSWER
        assert (await manager.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_corrupt_state(self, orchestrator, catalog):
        """Test invalid stored state raises in strict mode and is reset otherwise."""
        from orchestrator.state import ConversationState, StateInvariantError

        bad = ConversationState(phase=Phase.COLLECTING_PARAMS)

        strict = _manager(orchestrator, strict_invariants=True)
        await strict.store.save("c1", bad)
        with pytest.raises(StateInvariantError):
            await strict.process_message("c1", "hello", catalog)

        lenient = _manager(orchestrator)
        await lenient.store.save("c1", bad)
        outcome = await lenient.process_message("c1", "hello", catalog)
        assert outcome.kind == OutcomeKind.FINAL_ANSWER
        assert (await lenient.store.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_reset_conversation(self, orchestrator, catalog):
        """Test reset clears pending tools and is a no-op on normal state."""
        store = InstrumentedStore()
        manager = _manager(orchestrator, store=store)

        await manager.reset_conversation("c1")
        assert ("save", "c1") not in store.order

        await manager.process_message("c1", "what should I wear", catalog)
        await manager.reset_conversation("c1")

        assert (await store.inner.load("c1")).is_initial

    @pytest.mark.asyncio
    async def test_registry_catalog(self, orchestrator, local_tools):
        """Test tools are found through the registry when no catalog is given."""
        from mcp_client.registry import ToolProviderRegistry

        registry = ToolProviderRegistry()
        registry.add_for_user("alice", local_tools)
        manager = _manager(orchestrator, registry=registry)

        outcome = await manager.process_message("c1", "what should I wear", user_id="alice")
        other = await manager.process_message("c2", "what should I wear", user_id="bob")

        assert outcome.kind == OutcomeKind.CLARIFICATION
        assert other.kind == OutcomeKind.FINAL_ANSWER

    @pytest.mark.asyncio
    async def test_history_context(self, orchestrator, catalog, mock_llm):
        """Test plain answers see prior messages but not the current one twice."""
        from orchestrator.history import ChatHistory

        history = ChatHistory()
        await history.append_message("c1", "user", "My name is Ada")
        await history.append_message("c1", "assistant", "Nice to meet you")
        await history.append_message("c1", "user", "hello")
        manager = _manager(orchestrator, history=history)

        await manager.process_message("c1", "hello", catalog)

        prompt = mock_llm.prompts[-1]
        assert "User: My name is Ada" in prompt
        assert prompt.count("User: hello") == 1

    @pytest.mark.asyncio
    async def test_same_conversation_serialized(self, orchestrator, catalog, mock_llm):
        """Test turns of one conversation never overlap."""
        mock_llm.delay = 0.02
        store = InstrumentedStore()
        manager = _manager(orchestrator, store=store)

        first, second = await asyncio.gather(
            manager.process_message("c1", "what should I wear", catalog),
            manager.process_message("c1", "Boston", catalog),
        )

        assert store.max_active == 1
        assert store.order == [("load", "c1"), ("save", "c1"), ("load", "c1"), ("save", "c1")]
        assert first.kind == OutcomeKind.CLARIFICATION
        assert second.kind == OutcomeKind.FINAL_ANSWER

    @pytest.mark.asyncio
    async def test_different_conversations_concurrent(self, catalog):
        """Test a slow conversation does not block another one."""
        from orchestrator.llm import LLMProvider
        from orchestrator.reasoner import Reasoner
        from orchestrator.tools import ToolOrchestrator

        release = asyncio.Event()

        class GatedLLM(LLMProvider):
            async def complete(self, prompt, temperature=None, max_tokens=None):
                if "determine which tools" in prompt:
                    return "[]"
                if "slow question" in prompt:
                    await release.wait()
                return "answer"

        manager = _manager(ToolOrchestrator(Reasoner(GatedLLM())))

        slow = asyncio.create_task(manager.process_message("a", "slow question", catalog))
        await asyncio.sleep(0.01)

        fast = await asyncio.wait_for(manager.process_message("b", "hi", catalog), timeout=1)
        assert fast.kind == OutcomeKind.FINAL_ANSWER
        assert not slow.done()

        release.set()
        assert (await slow).kind == OutcomeKind.FINAL_ANSWER
