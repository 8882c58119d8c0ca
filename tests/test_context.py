"""
Tests for context assembly: budget and depth bounds, ordering, sources.
"""

import pytest

from chatrelay.context import ContextAssembler, ContextBudget, select_history
from chatrelay.errors import ChatError, ErrorKind
from chatrelay.state import LockedMap
from chatrelay.storage.models import PROMPT_MSG, REPLY_MSG, ChatMessage, ChatModel, ChatRole

MODEL = "gpt-4"


def _history(n):
    # each message serialises to 4 words: {"role": "user", "content": "mN"}
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"}
        for i in range(n)
    ]


def test_budget_fixed_tokens():
    budget = ContextBudget(max_context=100, max_depth=5, reserved_tokens=10, tool_tokens=3, prompt_tokens=7)
    assert budget.fixed_tokens == 20


def test_select_history_respects_token_budget(accountant):
    history = _history(20)
    budget = ContextBudget(max_context=30, max_depth=100, reserved_tokens=10)
    picked = select_history(history, budget, accountant, MODEL)

    # 10 + 4 * 4 = 26 fits, a fifth message would reach 30
    assert picked == history[-4:]
    used = budget.fixed_tokens + sum(accountant.estimate(m, MODEL) for m in picked)
    assert used < budget.max_context


def test_select_history_respects_depth(accountant):
    history = _history(20)
    budget = ContextBudget(max_context=10_000, max_depth=3)
    assert select_history(history, budget, accountant, MODEL) == history[-3:]


def test_select_history_keeps_chronological_order(accountant):
    history = _history(6)
    picked = select_history(history, ContextBudget(max_context=10_000, max_depth=10), accountant, MODEL)
    assert [m["content"] for m in picked] == ["m0", "m1", "m2", "m3", "m4", "m5"]


def test_select_history_empty_when_fixed_costs_fill_budget(accountant):
    budget = ContextBudget(max_context=50, max_depth=10, reserved_tokens=48)
    assert select_history(_history(5), budget, accountant, MODEL) == []


@pytest.fixture
def model():
    return ChatModel(id=1, value=MODEL, max_tokens=100, max_context=1000)


@pytest.fixture
def role():
    return ChatRole(id=1, name="r", context=[{"role": "system", "content": "seed"}])


def _save(store, chat_id, type_, text):
    return store.save_message(ChatMessage(
        user_id=1, chat_id=chat_id, type=type_,
        content=ChatMessage.encode_content(text),
    ))


def test_check_prompt_overflow(store, accountant, model):
    assembler = ContextAssembler(store, LockedMap(), accountant)
    with pytest.raises(ChatError) as exc:
        assembler.check_prompt("word " * 1001, model)
    assert exc.value.kind is ErrorKind.CONTEXT_OVERFLOW


def test_check_prompt_returns_tokens(store, accountant, model):
    assembler = ContextAssembler(store, LockedMap(), accountant)
    assert assembler.check_prompt("four words right here", model) == 4


def test_history_from_store_after_role_seed(store, accountant, role):
    _save(store, "c1", PROMPT_MSG, "question")
    _save(store, "c1", REPLY_MSG, "answer")
    assembler = ContextAssembler(store, LockedMap(), accountant)

    history = assembler.history_for("c1", role)
    assert history == [
        {"role": "system", "content": "seed"},
        {"role": "user", "content": "question"},
        {"role": "assistant", "content": "answer"},
    ]


def test_history_prefers_cache(store, accountant, role):
    _save(store, "c1", PROMPT_MSG, "stored")
    cache = LockedMap()
    cache.put("c1", [{"role": "user", "content": "cached"}])
    assembler = ContextAssembler(store, cache, accountant)

    assert assembler.history_for("c1", role) == [{"role": "user", "content": "cached"}]


def test_regenerate_bypasses_cache_and_stops_before_message(store, accountant, role):
    _save(store, "c1", PROMPT_MSG, "first")
    _save(store, "c1", REPLY_MSG, "first answer")
    last = _save(store, "c1", PROMPT_MSG, "second")
    cache = LockedMap()
    cache.put("c1", [{"role": "user", "content": "cached"}])
    assembler = ContextAssembler(store, cache, accountant)

    history = assembler.history_for("c1", role, last_msg_id=last.id)
    assert [m["content"] for m in history] == ["seed", "first", "first answer"]


def test_assemble_disabled_returns_nothing(store, accountant, role, model):
    _save(store, "c1", PROMPT_MSG, "question")
    assembler = ContextAssembler(store, LockedMap(), accountant, enabled=False)
    assert assembler.assemble("c1", role, model, prompt_tokens=1) == []


def test_assemble_charges_tools_and_reserve(store, accountant, role):
    for i in range(5):
        _save(store, "c1", PROMPT_MSG, f"q{i}")
    tight = ChatModel(id=1, value=MODEL, max_tokens=10, max_context=22)
    assembler = ContextAssembler(store, LockedMap(), accountant)

    # reserve 10 + prompt 2 leaves room for two 4-token messages
    picked = assembler.assemble("c1", role, tight, prompt_tokens=2)
    assert [m["content"] for m in picked] == ["q3", "q4"]

    tools = [{"type": "function", "function": {"name": "f"}}]
    picked = assembler.assemble("c1", role, tight, prompt_tokens=2, tools=tools)
    assert len(picked) < 2
