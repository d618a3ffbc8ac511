"""Policy gate implementation.

Enforces a source's write mode and dataset allow-list against the
engine's dry-run plan for a statement.  Pure: no I/O, no exceptions for
denials.
"""

from __future__ import annotations

from contracts.execution import ExecutionRequest, QueryPlan, Session, TableRef
from contracts.manifest import WriteMode
from contracts.policy import DenialKind, PolicyDecision, PolicyGate, PolicyVerdict
from contracts.source import ResolvedSource

# Statements whose effect on datasets cannot be read from a plan.
_DATASET_LEVEL_STATEMENTS = frozenset({"CREATE_SCHEMA", "DROP_SCHEMA", "ALTER_SCHEMA"})
_ROUTINE_STATEMENTS = frozenset({"CREATE_FUNCTION", "CREATE_TABLE_FUNCTION", "CREATE_PROCEDURE"})
_CALL_STATEMENTS = frozenset({"CALL"})


def _allow(rule: str, reason: str) -> PolicyDecision:
    return PolicyDecision(verdict=PolicyVerdict.ALLOW, rule=rule, reason=reason)


def _deny(kind: DenialKind, rule: str, reason: str, dataset: str = "") -> PolicyDecision:
    return PolicyDecision(
        verdict=PolicyVerdict.DENY,
        kind=kind,
        rule=rule,
        reason=reason,
        dataset=dataset,
    )


def split_dataset(name: str, default_project: str) -> tuple[str, str]:
    """Split ``project.dataset`` (or a bare ``dataset``) into its parts."""
    project, _, dataset = name.rpartition(".")
    return (project or default_project), dataset


class SourcePolicyGate(PolicyGate):
    """Concrete gate driven by a resolved source's settings."""

    def authorize(
        self,
        source: ResolvedSource,
        request: ExecutionRequest,
        plan: QueryPlan | None,
        session: Session | None = None,
    ) -> PolicyDecision:
        restricted = bool(source.allowed_datasets())
        write_mode = source.write_mode()

        if plan is None:
            return self._check_unclassified(source, write_mode, restricted)

        decision = self._check_write_mode(write_mode, plan, session)
        if not decision.permitted:
            return decision

        if restricted:
            decision = self._check_datasets(source, request, plan, session)
            if not decision.permitted:
                return decision

        return _allow("policy", f"{plan.statement_type} statement permitted")

    # ── classification ──────────────────────────────────────────────

    def _check_unclassified(
        self, source: ResolvedSource, write_mode: WriteMode, restricted: bool
    ) -> PolicyDecision:
        if source.allows_unclassified() and write_mode == WriteMode.ALLOWED and not restricted:
            return _allow(
                "classification.permissive",
                "Statement could not be planned; source allows unclassified statements",
            )
        return _deny(
            DenialKind.CLASSIFICATION_UNAVAILABLE,
            "classification",
            "The engine could not produce a plan for this statement",
        )

    # ── write mode ──────────────────────────────────────────────────

    def _check_write_mode(
        self, write_mode: WriteMode, plan: QueryPlan, session: Session | None
    ) -> PolicyDecision:
        if not plan.is_write or write_mode == WriteMode.ALLOWED:
            return _allow("write_mode", f"Write mode '{write_mode.value}' permits this statement")

        if write_mode == WriteMode.BLOCKED:
            return _deny(
                DenialKind.WRITE_BLOCKED,
                "write_mode.blocked",
                f"Write mode is 'blocked'; {plan.statement_type} statements are not allowed, "
                "only SELECT statements",
            )

        # protected: only writes confined to this invocation's session
        if session is None:
            return _deny(
                DenialKind.WRITE_BLOCKED,
                "write_mode.protected",
                "Write mode is 'protected'; writes require a session and none is bound",
            )
        targets = plan.write_targets or plan.referenced_tables
        if not targets:
            return _deny(
                DenialKind.WRITE_BLOCKED,
                "write_mode.protected",
                f"Write mode is 'protected'; the target of {plan.statement_type} "
                "could not be determined",
            )
        for table in targets:
            if not session.owns_dataset(table.dataset):
                return _deny(
                    DenialKind.WRITE_BLOCKED,
                    "write_mode.protected",
                    "Write mode is 'protected'; only SELECT statements or writes to the "
                    f"session's temporary dataset are allowed, but {plan.statement_type} "
                    f"touches '{table}'",
                    dataset=table.dataset_path,
                )
        return _allow("write_mode.protected", "Write is confined to the session dataset")

    # ── dataset allow-list ──────────────────────────────────────────

    def _check_datasets(
        self,
        source: ResolvedSource,
        request: ExecutionRequest,
        plan: QueryPlan,
        session: Session | None,
    ) -> PolicyDecision:
        statement_type = plan.statement_type.upper()
        if statement_type in _DATASET_LEVEL_STATEMENTS:
            return _deny(
                DenialKind.DATASET_NOT_ALLOWED,
                "dataset.restricted_statement",
                f"Dataset-level operations like '{statement_type}' are not allowed "
                "when dataset restrictions are in place",
            )
        if statement_type in _ROUTINE_STATEMENTS | _CALL_STATEMENTS:
            return _deny(
                DenialKind.DATASET_NOT_ALLOWED,
                "dataset.restricted_statement",
                f"'{statement_type}' is not allowed when dataset restrictions are in "
                "place, as routine contents cannot be analyzed",
            )

        if request.default_dataset:
            project, dataset = split_dataset(request.default_dataset, source.project)
            if not source.is_dataset_allowed(project, dataset):
                return _deny(
                    DenialKind.DATASET_NOT_ALLOWED,
                    "dataset.allow",
                    f"Default dataset '{project}.{dataset}' is not in the allowed list",
                    dataset=f"{project}.{dataset}",
                )

        tables = _unique_tables(plan.referenced_tables + plan.write_targets)
        if not tables and plan.is_write:
            return _deny(
                DenialKind.CLASSIFICATION_UNAVAILABLE,
                "dataset.unresolved",
                f"The plan for {statement_type} names no tables, so dataset "
                "restrictions cannot be verified",
            )

        for table in tables:
            if session is not None and session.owns_dataset(table.dataset):
                continue
            if not source.is_dataset_allowed(table.project, table.dataset):
                return _deny(
                    DenialKind.DATASET_NOT_ALLOWED,
                    "dataset.allow",
                    f"Query accesses dataset '{table.dataset_path}', which is not in the "
                    "allowed list",
                    dataset=table.dataset_path,
                )
        return _allow("dataset.allow", "All referenced datasets are allowed")


def _unique_tables(tables: list[TableRef]) -> list[TableRef]:
    seen: set[str] = set()
    unique: list[TableRef] = []
    for table in tables:
        key = str(table)
        if key not in seen:
            seen.add(key)
            unique.append(table)
    return unique
