"""Built-in tools: the executors the job runner is allowed to run.

``default_tools(ctx)`` is the whole allowlist.  Each executor is bound to
the runtime context here, so the registry only ever sees
``Callable[[Job], None]``.
"""

from __future__ import annotations

from functools import partial

from autonomy.orchestrator.context import RuntimeContext
from autonomy.orchestrator.tool_registry import Executor
from autonomy.tools import calendar_sync, notifications, sms

TOOL_FUNCTIONS = {
    "send_confirmation": notifications.send_confirmation,
    "send_cancellation": notifications.send_cancellation,
    "send_reminder": notifications.send_reminder,
    "send_hold_followup": notifications.send_hold_followup,
    "send_waitlist_notification": notifications.send_waitlist_notification,
    "escalate_calendar_failure": notifications.escalate_calendar_failure,
    "send_contact_followup": notifications.send_contact_followup,
    "retry_calendar_sync": calendar_sync.retry_calendar_sync,
    "send_sms_reminder": sms.send_sms_reminder,
    "process_sms_outbox": sms.process_sms_outbox,
}


def default_tools(ctx: RuntimeContext) -> list[tuple[str, Executor]]:
    return [(name, partial(fn, ctx)) for name, fn in TOOL_FUNCTIONS.items()]
