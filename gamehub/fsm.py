from __future__ import annotations

from enum import StrEnum

from statemachine import State, StateMachine


class GamePhase(StrEnum):
    uninitialized = "uninitialized"
    initialized = "initialized"
    running = "running"
    paused = "paused"
    ended = "ended"


class GameLifecycle(StateMachine):
    """Lifecycle guard for a single BaseGame instance.

    uninitialized -> initialized -> running <-> paused -> ended

    `ended` is final. Games only mutate their state while `running`; the FSM just
    refuses transitions that are not allowed (TransitionNotAllowed).
    """

    uninitialized = State(GamePhase.uninitialized.value, value=GamePhase.uninitialized.value, initial=True)
    initialized = State(GamePhase.initialized.value, value=GamePhase.initialized.value)
    running = State(GamePhase.running.value, value=GamePhase.running.value)
    paused = State(GamePhase.paused.value, value=GamePhase.paused.value)
    ended = State(GamePhase.ended.value, value=GamePhase.ended.value, final=True)

    setup = uninitialized.to(initialized)
    begin = initialized.to(running)
    pause = running.to(paused)
    resume = paused.to(running)
    finish = running.to(ended) | paused.to(ended) | initialized.to(ended)

    @property
    def phase(self) -> GamePhase:
        return GamePhase(str(self.current_state.value))
