"""Append-only, immutable session history."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from agent_dispatch.agent.actions import Action, Observation

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass(slots=True, frozen=True)
class MessageTurn:
    role: str
    content: str


@dataclass(slots=True, frozen=True)
class ActionTurn:
    action: Action
    observation: Observation
    call_id: str | None = None


@dataclass(slots=True, frozen=True)
class InvalidActionTurn:
    name: str
    error: str
    observation: Observation
    call_id: str | None = None


Turn = MessageTurn | ActionTurn | InvalidActionTurn


class History:
    """Ordered sequence of turns; ``append`` returns a new history.

    Instances never change after construction, so a reference handed to a
    logger or engine adapter stays a consistent snapshot.
    """

    __slots__ = ("_turns",)

    def __init__(self, turns: tuple[Turn, ...] = ()) -> None:
        self._turns = turns

    @classmethod
    def start(cls, initial_context: str) -> History:
        return cls((MessageTurn(role=ROLE_USER, content=initial_context),))

    def append(self, turn: Turn) -> History:
        return History((*self._turns, turn))

    @property
    def turns(self) -> tuple[Turn, ...]:
        return self._turns

    def actions(self) -> list[Action]:
        return [turn.action for turn in self._turns if isinstance(turn, ActionTurn)]

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]
