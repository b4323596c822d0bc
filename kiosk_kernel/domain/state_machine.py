"""
State machine primitives for order and rental status workflows.

Responsibility:
    Declarative status tables (Workflow of Transition edges) and the
    evaluator that decides whether a requested status change applies, is an
    idempotent no-op, or is rejected.

Architecture position:
    Kernel > Domain -- pure, no I/O.  Concrete tables live in
    ``kiosk_kernel.domain.workflows``.

Invariants enforced:
    - Every status enum member is a declared state with a (possibly empty)
      outgoing edge set; terminal states have none.  Checked once at import
      by ``validate_workflow``; a malformed table fails startup.
    - A pair (current, requested) absent from the table is rejected with
      InvalidStatusTransitionError, except requesting the current terminal
      status, which is an idempotent no-op.
    - Edges carry a TransitionScope; an actor may use an edge only if its
      own scope covers it (ANY < ELEVATED < SYSTEM).

Failure modes:
    - WorkflowDefinitionError at import for a malformed table.
    - InvalidStatusTransitionError from ``evaluate``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from kiosk_kernel.exceptions import InvalidStatusTransitionError, WorkflowDefinitionError

S = TypeVar("S", bound=Enum)


class TransitionScope(str, Enum):
    """Who may traverse an edge."""

    ANY = "any"            # Any actor holding the operation's permission
    ELEVATED = "elevated"  # Admin / manager override
    SYSTEM = "system"      # Internal processes only (workers, sweeps)


_SCOPE_RANK = {
    TransitionScope.ANY: 0,
    TransitionScope.ELEVATED: 1,
    TransitionScope.SYSTEM: 2,
}


def scope_covers(actor_scope: TransitionScope, required: TransitionScope) -> bool:
    """True if an actor with ``actor_scope`` may use an edge requiring ``required``."""
    return _SCOPE_RANK[actor_scope] >= _SCOPE_RANK[required]


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: Any
    to_state: Any
    action: str
    scope: TransitionScope = TransitionScope.ANY
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: Any
    states: tuple[Any, ...]
    terminal_states: frozenset[Any]
    transitions: tuple[Transition, ...]


class TransitionDecision(str, Enum):
    APPLY = "apply"
    NOOP = "noop"


def validate_workflow(workflow: Workflow, status_type: type[Enum]) -> None:
    """
    Check a workflow table against its status enum.

    Raises:
        WorkflowDefinitionError: listing every problem found.
    """
    problems: list[str] = []
    declared = set(workflow.states)

    for member in status_type:
        if member not in declared:
            problems.append(f"state {member.value} has no declared edge set")
    for state in workflow.states:
        if not isinstance(state, status_type):
            problems.append(f"state {state!r} is not a {status_type.__name__}")
    if len(declared) != len(workflow.states):
        problems.append("duplicate states declared")
    if workflow.initial_state not in declared:
        problems.append(f"initial state {workflow.initial_state!r} is not declared")
    if workflow.initial_state in workflow.terminal_states:
        problems.append("initial state is terminal")
    for state in workflow.terminal_states:
        if state not in declared:
            problems.append(f"terminal state {state!r} is not declared")

    seen: set[tuple[Any, Any]] = set()
    for t in workflow.transitions:
        if t.from_state not in declared or t.to_state not in declared:
            problems.append(f"edge {t.action} references an undeclared state")
        if t.from_state in workflow.terminal_states:
            problems.append(f"terminal state {t.from_state.value} has outgoing edge {t.action}")
        if t.from_state == t.to_state:
            problems.append(f"edge {t.action} is a self-loop")
        key = (t.from_state, t.to_state)
        if key in seen:
            problems.append(f"duplicate edge {t.from_state.value} -> {t.to_state.value}")
        seen.add(key)

    if problems:
        raise WorkflowDefinitionError(workflow.name, problems)


class StateMachine(Generic[S]):
    """
    Evaluator over a validated Workflow.

    Contract:
        Transition validity is evaluated twice by callers: once before any
        I/O (advisory, for fast feedback) and once inside the transaction
        against freshly read state (authoritative).  Both calls use the same
        ``evaluate`` so the answers cannot drift apart.
    """

    def __init__(self, workflow: Workflow, status_type: type[S], entity_type: str):
        validate_workflow(workflow, status_type)
        self.workflow = workflow
        self.status_type = status_type
        self.entity_type = entity_type
        self._edges: dict[S, dict[S, Transition]] = {s: {} for s in workflow.states}
        for t in workflow.transitions:
            self._edges[t.from_state][t.to_state] = t

    @property
    def valid_transitions(self) -> dict[S, frozenset[S]]:
        """Outgoing edge sets keyed by state (scope ignored)."""
        return {s: frozenset(edges) for s, edges in self._edges.items()}

    def coerce(self, value: Any) -> S:
        """Turn a stored string back into the status enum."""
        return self.status_type(value)

    def is_terminal(self, state: Any) -> bool:
        return self.coerce(state) in self.workflow.terminal_states

    def transition_for(self, current: Any, requested: Any) -> Transition | None:
        return self._edges[self.coerce(current)].get(self.coerce(requested))

    def allowed_targets(self, current: Any, scope: TransitionScope) -> frozenset[S]:
        return frozenset(
            target
            for target, t in self._edges[self.coerce(current)].items()
            if scope_covers(scope, t.scope)
        )

    def evaluate(
        self,
        current: Any,
        requested: Any,
        scope: TransitionScope,
        entity_id: Any = None,
    ) -> TransitionDecision:
        """
        Decide a requested status change.

        Returns:
            APPLY when the edge exists and the scope covers it; NOOP when
            ``requested`` is the current status and it is terminal.

        Raises:
            InvalidStatusTransitionError: otherwise.
        """
        current_s = self.coerce(current)
        requested_s = self.coerce(requested)
        if current_s == requested_s and current_s in self.workflow.terminal_states:
            return TransitionDecision.NOOP
        t = self._edges[current_s].get(requested_s)
        if t is None or not scope_covers(scope, t.scope):
            raise InvalidStatusTransitionError(
                self.entity_type, entity_id, current_s.value, requested_s.value,
            )
        return TransitionDecision.APPLY
