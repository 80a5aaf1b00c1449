from enum import Enum


class Transition(str, Enum):
    START = "start"
    STOP = "stop"
    DELETE = "delete"


class TransitionState(str, Enum):
    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class Action(str, Enum):
    CREATE = "create"
    SET_RUNNING = "set_running"
    SET_STOPPED = "set_stopped"
    DELETE = "delete"
    NOOP = "noop"
    READ = "read"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    TransitionState.ABSENT.value: {
        TransitionState.CREATED.value,
        TransitionState.STOPPED.value,
    },
    TransitionState.CREATED.value: {
        TransitionState.RUNNING.value,
        TransitionState.STOPPED.value,
        TransitionState.ABSENT.value,
    },
    # an object removed out-of-band is re-created on the next start
    TransitionState.RUNNING.value: {
        TransitionState.CREATED.value,
        TransitionState.STOPPED.value,
        TransitionState.ABSENT.value,
    },
    TransitionState.STOPPED.value: {
        TransitionState.CREATED.value,
        TransitionState.RUNNING.value,
        TransitionState.ABSENT.value,
    },
}

# (transition, remote exists) -> (action, resulting state)
DECISIONS: dict[tuple[Transition, bool], tuple[Action, TransitionState]] = {
    (Transition.START, False): (Action.CREATE, TransitionState.CREATED),
    (Transition.START, True): (Action.SET_RUNNING, TransitionState.RUNNING),
    (Transition.STOP, False): (Action.NOOP, TransitionState.STOPPED),
    (Transition.STOP, True): (Action.SET_STOPPED, TransitionState.STOPPED),
    (Transition.DELETE, False): (Action.DELETE, TransitionState.ABSENT),
    (Transition.DELETE, True): (Action.DELETE, TransitionState.ABSENT),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


def decide(
    transition: Transition | None, exists: bool
) -> tuple[Action, TransitionState | None]:
    """Map a requested transition and remote existence to the required action.

    ``None`` as the transition is a read-through: the resulting state is
    whatever the remote object reports, so it is returned as ``None``.
    """
    if transition is None:
        return Action.READ, None
    return DECISIONS[(Transition(transition), exists)]
