"""
Policy evaluation.

Scans a snapshot of policies for an allowance matching (agent, tool,
action) and applies its conditions.

Order is deterministic: policies by source id, then agents and allowances
in declaration order. By default the first matching allowance decides,
even when its conditions fail and a later allowance would have granted the
call unconditionally. With continue_on_condition_failure the scan goes on
until some allowance passes, and the first failure is reported if none do.
"""

from typing import Any, Iterable

from gatekeeper.policy.conditions import check_conditions
from gatekeeper.schema import Decision, Policy


def not_allowed_reason(agent_id: str, tool: str, action: str) -> str:
    """Generic reason used when nothing matches."""
    return f"Agent {agent_id} is not allowed to perform action {action} on tool {tool}"


def evaluate(
    policies: Iterable[Policy],
    agent_id: str,
    tool: str,
    action: str,
    params: dict[str, Any],
    continue_on_condition_failure: bool = False,
) -> Decision:
    """
    Decide whether an agent may perform an action on a tool.

    Args:
        policies: Policies in evaluation order (a store snapshot)
        agent_id: Calling agent
        tool: Requested tool
        action: Requested action
        params: Parsed request body
        continue_on_condition_failure: Keep scanning after a matching
            allowance fails its conditions

    Returns:
        Decision with the outcome and, on denial, the reason
    """
    first_failure: Decision | None = None

    for policy in policies:
        for agent in policy.agents:
            if agent.id != agent_id:
                continue

            for allowance in agent.allow:
                if allowance.tool != tool or not allowance.allows_action(action):
                    continue

                failure = check_conditions(allowance.conditions, params)
                if failure is None:
                    return Decision.allow(policy)

                denial = Decision.deny(failure, policy)
                if not continue_on_condition_failure:
                    return denial
                if first_failure is None:
                    first_failure = denial

    if first_failure is not None:
        return first_failure

    return Decision.deny(not_allowed_reason(agent_id, tool, action))
