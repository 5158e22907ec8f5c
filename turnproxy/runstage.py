"""Named stages of a proxy run and the error type that carries them."""

from __future__ import annotations

from enum import StrEnum


class Stage(StrEnum):
    """A step of the client runtime in which a failure can occur."""

    POLICY_VALIDATE = "policy_validate"
    PROVIDER_RESOLVE = "provider_resolve"
    SESSION_SUPERVISE = "session_supervision"
    LOCAL_BIND = "local_bind"
    TURN_DIAL = "turn_dial"
    TURN_ALLOCATE = "turn_allocate"
    PEER_SETUP = "peer_setup"
    DTLS_HANDSHAKE = "dtls_handshake"
    FORWARDING_LOOP = "forwarding_loop"


class StageError(Exception):
    """An error tagged with the stage in which it happened."""

    def __init__(self, stage: Stage | str, err: BaseException | None = None) -> None:
        self.stage = Stage(stage)
        self.err = err
        super().__init__(self.stage, err)
        self.__cause__ = err

    def __str__(self) -> str:
        if self.err is None:
            return f"stage {self.stage} failed"
        return f"stage {self.stage} failed: {self.err}"


def _find_stage_error(err: BaseException | None) -> StageError | None:
    seen: set[int] = set()
    stack: list[BaseException | None] = [err]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, StageError):
            return current
        stack.append(current.__cause__)
        if isinstance(current, BaseExceptionGroup):
            stack.extend(reversed(current.exceptions))
    return None


def wrap(stage: Stage | str, err: BaseException | None) -> BaseException | None:
    """Tag ``err`` with ``stage`` unless it already carries a stage."""
    if err is None:
        return None
    if _find_stage_error(err) is not None:
        return err
    return StageError(stage, err)


def from_error(err: BaseException | None) -> Stage | None:
    """Return the stage carried by ``err`` or by its causes, if any."""
    found = _find_stage_error(err)
    if found is None:
        return None
    return found.stage