"""
Jinja2 rendering of the artifacts that carry a plan.

- the standalone Python script run by Task Scheduler
- the PowerShell cleanup step of an Agent job

Both are pure functions of their inputs so they can be checked without a
scheduler backend.
"""

import ast
import json
import re
from typing import Any, Sequence

from jinja2 import Environment, PackageLoader, StrictUndefined

from oneshot.core.commands import sql_literal
from oneshot.core.plan import Plan, Step
from oneshot.core.shell import ps_quote

SCRIPT_TEMPLATE = "task_script.py.j2"
AGENT_CLEANUP_TEMPLATE = "agent_cleanup.ps1.j2"

_PLAN_LINE_RE = re.compile(r"^PLAN_JSON = (.+)$", re.MULTILINE)

_env = Environment(
    loader=PackageLoader("oneshot.scheduler", "templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)
_env.filters["pyrepr"] = repr
_env.filters["ps"] = ps_quote
_env.filters["sql"] = sql_literal


def render_script(plan: Plan, values: dict[str, Any]) -> str:
    """
    Render the Task Scheduler script for ``plan``.

    The plan is embedded as a single-line JSON literal so :func:`extract_plan`
    can read it back from the persisted file.

    Args:
        plan: Fully built plan
        values: Extra template values (``version``, ``generated_at``)

    Returns:
        Python source text
    """
    plan_json = json.dumps(plan.to_dict())
    template = _env.get_template(SCRIPT_TEMPLATE)
    return template.render(plan=plan, plan_json=plan_json, **values)


def extract_plan(script_text: str) -> Plan:
    """
    Recover the plan embedded in a rendered script.

    Raises:
        ValueError: If the text holds no embedded plan
    """
    match = _PLAN_LINE_RE.search(script_text)
    if not match:
        raise ValueError("no embedded plan found in script")
    return Plan.from_dict(json.loads(ast.literal_eval(match.group(1))))


def render_agent_cleanup(
    identity: str,
    target: str,
    report_file: str,
    steps: Sequence[Step],
) -> str:
    """PowerShell for the Agent cleanup step: export job history, then delete the job."""
    template = _env.get_template(AGENT_CLEANUP_TEMPLATE)
    return template.render(
        identity=identity,
        target=target,
        report_file=report_file,
        steps=steps,
    )
