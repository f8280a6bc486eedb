"""Default-deny policy engine.

Handlers call ``evaluate(action, tenant_id, context)`` before any
side-effecting action.  Rules come from a ``PolicyStore``; the engine only
reads them.

Matching
--------
* A rule applies when it is active, names the action, and is either global
  (``tenant_id is None``) or belongs to the tenant.
* Its conditions are satisfied when every key is present in the context and:

  - ``min_<x>`` with a numeric value → ``context[key] >= value``
  - ``max_<x>`` with a numeric value → ``context[key] <= value``
  - anything else → equality

  Empty conditions always match.
* The satisfied rule with the highest ``priority`` decides.  Ties prefer a
  tenant rule over a global one, then the lowest rule id.
* No satisfied rule → ``deny`` with ``rule_id=None``.

Every decision is audited as ``policy.allow`` / ``policy.deny``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from autonomy.audit import AuditLogger
from autonomy.clock import Clock, utcnow
from autonomy.domain.models import PolicyDecision, PolicyEffect, PolicyRule
from autonomy.interfaces import PolicyStore

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "no matching policy"

EMAIL = {"channel": "email"}
SMS = {"channel": "sms"}
CALENDAR_WRITE = {"failure_type": "calendar_write"}


def _global(
    rule_id: str, action: str, effect: PolicyEffect, conditions: dict, priority: int = 10,
) -> PolicyRule:
    return PolicyRule(
        id=rule_id, action=action, effect=effect, conditions=conditions, priority=priority,
    )


# Global rules a fresh runtime starts with.  Tenants override them with
# higher-priority rules of their own.
DEFAULT_POLICY_RULES: tuple[PolicyRule, ...] = (
    _global("default-send-confirmation", "send_confirmation", PolicyEffect.ALLOW, EMAIL),
    _global("default-send-cancellation", "send_cancellation", PolicyEffect.ALLOW, EMAIL),
    _global("default-send-reminder", "send_reminder", PolicyEffect.ALLOW, EMAIL),
    _global("default-retry-calendar-sync", "retry_calendar_sync", PolicyEffect.ALLOW, CALENDAR_WRITE),
    _global("default-auto-cancel-no-show", "auto_cancel_no_show", PolicyEffect.DENY, {}),
    _global("default-hold-followup", "hold_followup", PolicyEffect.ALLOW, EMAIL),
    _global("default-waitlist-notify", "waitlist_notify", PolicyEffect.ALLOW, EMAIL),
    _global("default-escalate-calendar", "escalate_calendar_failure", PolicyEffect.ALLOW, CALENDAR_WRITE),
    _global("default-contact-followup-email", "send_contact_followup", PolicyEffect.ALLOW, EMAIL),
    _global("default-contact-followup-sms", "send_contact_followup", PolicyEffect.ALLOW, SMS, 11),
    _global("default-send-sms-confirmation", "send_sms_confirmation", PolicyEffect.ALLOW, SMS),
    _global(
        "default-contact-followup-limit", "send_contact_followup", PolicyEffect.DENY,
        {"max_followup_count": 2}, 20,
    ),
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def condition_satisfied(key: str, expected: Any, context: Mapping[str, Any]) -> bool:
    if key not in context:
        return False
    actual = context[key]
    if key.startswith("min_") and _is_number(expected):
        return _is_number(actual) and actual >= expected
    if key.startswith("max_") and _is_number(expected):
        return _is_number(actual) and actual <= expected
    return actual == expected


def conditions_satisfied(conditions: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    return all(condition_satisfied(k, v, context) for k, v in conditions.items())


class PolicyEngine:
    def __init__(self, store: PolicyStore, audit: AuditLogger, *, clock: Clock = utcnow):
        self._store = store
        self._audit = audit
        self._clock = clock

    def evaluate(
        self,
        action: str,
        tenant_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> PolicyDecision:
        """Decide whether *action* may run for *tenant_id* in *context*.

        Always returns a decision (default deny) and audits it.
        """
        context = context or {}
        candidates = [
            rule
            for rule in self._store.find_by_action(action)
            if rule.is_active
            and rule.action == action
            and rule.tenant_id in (None, tenant_id)
            and conditions_satisfied(rule.conditions, context)
        ]
        candidates.sort(key=_rank)

        if candidates:
            rule = candidates[0]
            decision = PolicyDecision(
                effect=rule.effect,
                rule_id=rule.id,
                action=action,
                reason=f"{rule.effect.value} by rule {rule.id} (priority {rule.priority})",
                evaluated_at=self._clock(),
            )
        else:
            decision = PolicyDecision(
                effect=PolicyEffect.DENY,
                rule_id=None,
                action=action,
                reason=NO_MATCH_REASON,
                evaluated_at=self._clock(),
            )

        self._audit.log(
            tenant_id=tenant_id,
            event_type=f"policy.{decision.effect.value}",
            entity_type="policy",
            entity_id=decision.rule_id,
            actor="policy_engine",
            payload={"action": action, "reason": decision.reason, "context": dict(context)},
        )
        logger.debug("Policy %s for %s: %s", decision.effect.value, action, decision.reason)
        return decision


def _rank(rule: PolicyRule) -> tuple[int, int, str]:
    return (-rule.priority, 0 if rule.tenant_id is not None else 1, rule.id)
