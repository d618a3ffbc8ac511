"""Policy gate contracts.

The gate is a pure decision: it sees the source's settings, the request,
and the engine's plan for the statement, and never performs I/O itself.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from pydantic import BaseModel

from contracts.execution import ExecutionRequest, QueryPlan, Session
from contracts.source import ResolvedSource


class PolicyVerdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class DenialKind(str, Enum):
    WRITE_BLOCKED = "write_blocked"
    DATASET_NOT_ALLOWED = "dataset_not_allowed"
    CLASSIFICATION_UNAVAILABLE = "classification_unavailable"


class PolicyDecision(BaseModel):
    verdict: PolicyVerdict
    kind: DenialKind | None = None
    rule: str = ""      # which rule triggered the decision
    reason: str = ""    # human-readable explanation
    dataset: str = ""   # offending dataset, when one is to blame

    @property
    def permitted(self) -> bool:
        return self.verdict == PolicyVerdict.ALLOW


class PolicyGate(ABC):
    """Interface that the runtime policy gate must implement."""

    @abstractmethod
    def authorize(
        self,
        source: ResolvedSource,
        request: ExecutionRequest,
        plan: QueryPlan | None,
        session: Session | None = None,
    ) -> PolicyDecision:
        """May this statement run (or be planned) against *source*?"""
        ...
