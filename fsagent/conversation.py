"""Conversation state: turns, parts, and the append-only turn log."""

from dataclasses import dataclass, field
from typing import Iterator, Sequence, Union

USER = "user"
MODEL = "model"


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class FunctionCall:
    """A tool invocation requested by the model."""

    name: str
    args: dict = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class FunctionResponse:
    """The result (or error) of one FunctionCall, sent back to the model."""

    name: str
    response: dict
    id: str | None = None


Part = Union[TextPart, FunctionCall, FunctionResponse]


@dataclass(frozen=True)
class Turn:
    role: str
    parts: tuple[Part, ...]

    @property
    def text(self) -> str | None:
        texts = [p.text for p in self.parts if isinstance(p, TextPart)]
        return "".join(texts) if texts else None

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p for p in self.parts if isinstance(p, FunctionCall)]

    @property
    def function_responses(self) -> list[FunctionResponse]:
        return [p for p in self.parts if isinstance(p, FunctionResponse)]


def user_turn(content: str | Sequence[Part]) -> Turn:
    """Wrap text, or a sequence of tool-result parts, as a user turn."""
    if isinstance(content, str):
        return Turn(USER, (TextPart(content),))
    return Turn(USER, tuple(content))


class Conversation:
    """Ordered, append-only log of turns owned by a single Agent.

    Not thread-safe: callers must not run two agent loops against the same
    conversation at once.
    """

    def __init__(self):
        self._turns: list[Turn] = []

    def append(self, turn: Turn) -> None:
        if turn.role not in (USER, MODEL):
            raise ValueError(f"unknown turn role: {turn.role!r}")
        self._turns.append(turn)

    def clear(self) -> int:
        """Drop every turn. Returns how many were removed."""
        dropped = len(self._turns)
        self._turns = []
        return dropped

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]

