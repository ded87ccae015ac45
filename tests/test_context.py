"""Tests for token estimation and context building."""

from chatgate.gateway.context import ContextManager
from chatgate.gateway.tokens import estimate_tokens
from chatgate.gateway.types import Message, Role


def _msg(role: Role, chars: int, tag: str = "x") -> Message:
    return Message.create(role, (tag * chars)[:chars])


class TestTokenEstimator:
    def test_empty_text(self):
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_deterministic(self):
        text = "The quick brown fox jumps over the lazy dog"
        assert estimate_tokens(text) == estimate_tokens(text)

    def test_message_create_fills_estimate(self):
        m = Message.create("user", "a" * 40)
        assert m.role == Role.USER
        assert m.approx_tokens == 10


class TestContextManager:
    def setup_method(self):
        self.cm = ContextManager()

    def test_everything_fits(self):
        history = [_msg(Role.USER, 40, "u"), _msg(Role.ASSISTANT, 40, "a")]
        ctx = self.cm.build(history, "hello", budget_tokens=1000, system_preamble="Be nice.")

        assert ctx.messages[:2] == history
        assert ctx.messages[-1].content == "hello"
        assert ctx.messages[-1].role == Role.USER
        assert ctx.dropped_messages == 0
        assert ctx.system_preamble == "Be nice."

    def test_truncation_keeps_most_recent(self):
        # 10 history messages of 10 tokens each; new text is 2 tokens
        history = [_msg(Role.USER if i % 2 == 0 else Role.ASSISTANT, 40, str(i)) for i in range(10)]
        ctx = self.cm.build(history, "abcdefgh", budget_tokens=32)

        assert ctx.messages[:-1] == history[-3:]
        assert ctx.dropped_messages == 7
        assert ctx.estimated_tokens <= 32

    def test_never_exceeds_budget(self):
        history = [_msg(Role.USER, n * 7 + 3, "h") for n in range(1, 30)]
        for budget in (5, 17, 50, 123, 400):
            ctx = self.cm.build(history, "short question", budget_tokens=budget, system_preamble="sys")
            assert ctx.estimated_tokens <= budget

    def test_messages_are_never_split(self):
        history = [_msg(Role.USER, 37, "a"), _msg(Role.ASSISTANT, 53, "b"), _msg(Role.USER, 21, "c")]
        ctx = self.cm.build(history, "q", budget_tokens=20)

        originals = {m.content for m in history}
        for m in ctx.messages[:-1]:
            assert m.content in originals

    def test_stops_at_first_overflow(self):
        old_small = _msg(Role.USER, 4, "o")  # 1 token
        big = _msg(Role.ASSISTANT, 400, "b")  # 100 tokens
        new_small = _msg(Role.USER, 4, "n")  # 1 token
        ctx = self.cm.build([old_small, big, new_small], "q", budget_tokens=10)

        # The big message blocks the walk; older messages are not reached
        assert ctx.messages[:-1] == [new_small]
        assert ctx.dropped_messages == 2

    def test_system_messages_always_kept(self):
        system = _msg(Role.SYSTEM, 40, "s")  # 10 tokens
        history = [system] + [_msg(Role.USER, 40, str(i)) for i in range(5)]
        ctx = self.cm.build(history, "q", budget_tokens=22)

        assert ctx.messages[0] == system
        assert ctx.messages[1:-1] == history[-1:]
        assert ctx.estimated_tokens <= 22

    def test_order_is_preserved(self):
        history = [
            _msg(Role.USER, 8, "1"),
            _msg(Role.SYSTEM, 8, "2"),
            _msg(Role.ASSISTANT, 8, "3"),
            _msg(Role.USER, 8, "4"),
        ]
        ctx = self.cm.build(history, "q", budget_tokens=1000)
        assert [m.content for m in ctx.messages] == ["11111111", "22222222", "33333333", "44444444", "q"]

    def test_oversized_new_text_sent_alone(self):
        history = [_msg(Role.SYSTEM, 8, "s"), _msg(Role.USER, 8, "u")]
        huge = "z" * 400  # 100 tokens
        ctx = self.cm.build(history, huge, budget_tokens=50, system_preamble="pre")

        assert [m.content for m in ctx.messages] == [huge]
        assert ctx.system_preamble == "pre"
        assert ctx.dropped_messages == 2

    def test_empty_history(self):
        ctx = self.cm.build([], "hi", budget_tokens=100)
        assert len(ctx.messages) == 1
        assert ctx.dropped_messages == 0

    def test_dialogue_and_system_views(self):
        history = [_msg(Role.SYSTEM, 8, "s"), _msg(Role.USER, 8, "u"), _msg(Role.ASSISTANT, 8, "a")]
        ctx = self.cm.build(history, "q", budget_tokens=1000)
        assert [m.role for m in ctx.system_messages] == [Role.SYSTEM]
        assert [m.role for m in ctx.dialogue] == [Role.USER, Role.ASSISTANT, Role.USER]
