"""
Schema definitions for Gatekeeper.

This module defines the Pydantic models for policy documents and decisions:
- Policy/AgentPolicy/ToolAllowance: What each agent is allowed to do
- NumericBound/StringSet/PathPrefix: Conditions on request parameters
- Decision: The result of policy evaluation

Design Decisions:
    - Models are immutable (frozen=True) so a published policy can be
      shared by concurrent readers without copying
    - Unknown keys in policy documents are ignored and logged at debug level
    - Conditions are normalized at load time into tagged variants, so
      evaluation dispatches on the variant instead of inspecting raw YAML
    - Unknown condition keys are accepted and ignored
"""

import logging
import math
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


# =============================================================================
# Condition Variants
# =============================================================================


class NumericBound(BaseModel):
    """
    Upper bound on a numeric parameter (max_amount -> params.amount).

    Attributes:
        kind: Condition key in the policy document
        param: Request parameter the bound applies to
        limit: Largest accepted value (inclusive)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["max_amount"] = "max_amount"
    param: str = "amount"
    limit: float = Field(..., strict=True)

    @field_validator("limit")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        """Reject NaN and infinities."""
        if not math.isfinite(v):
            msg = "max_amount must be a finite number"
            raise ValueError(msg)
        return v

    def describe(self) -> str:
        """Render the bound the way it appears in denial reasons."""
        limit = float(self.limit)
        if limit.is_integer():
            return f"max_amount={int(limit)}"
        return f"max_amount={limit}"


class StringSet(BaseModel):
    """Allowed values for a string parameter (currencies -> params.currency)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["currencies"] = "currencies"
    param: str = "currency"
    values: frozenset[str] = Field(default_factory=frozenset)


class PathPrefix(BaseModel):
    """Required prefix of a path parameter (folder_prefix -> params.path)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["folder_prefix"] = "folder_prefix"
    param: str = "path"
    prefix: str


Condition = Annotated[
    Union[NumericBound, StringSet, PathPrefix],
    Field(discriminator="kind"),
]

# Condition key -> name of the variant field that holds the configured value
CONDITION_FIELDS: dict[str, str] = {
    "max_amount": "limit",
    "currencies": "values",
    "folder_prefix": "prefix",
}


# =============================================================================
# Policy Models
# =============================================================================


class DocumentModel(BaseModel):
    """Base for models read from policy documents; unknown keys are dropped."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def log_unknown_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            ignored = sorted(str(k) for k in data if k not in cls.model_fields)
            if ignored:
                logger.debug("Ignoring unrecognized %s keys: %s", cls.__name__, ", ".join(ignored))
        return data


class ToolAllowance(DocumentModel):
    """
    One grant: a tool, the actions allowed on it, and optional conditions.

    Attributes:
        tool: Tool name (e.g., "payments")
        actions: Actions allowed on the tool (at least one)
        conditions: Normalized conditions, in evaluation order
    """

    tool: str = Field(..., min_length=1, description="Tool name")
    actions: tuple[str, ...] = Field(
        ...,
        min_length=1,
        description="Actions allowed on the tool",
    )
    conditions: tuple[Condition, ...] = Field(
        default=(),
        description="Conditions that must hold for the grant to apply",
    )

    @field_validator("conditions", mode="before")
    @classmethod
    def normalize_conditions(cls, v: Any) -> Any:
        """Turn the YAML mapping into a list of tagged condition variants."""
        if v is None:
            return ()
        if not isinstance(v, dict):
            # Let pydantic report the type error on the raw value
            return v

        normalized = []
        for key in CONDITION_FIELDS:
            if key in v:
                normalized.append({"kind": key, CONDITION_FIELDS[key]: v[key]})

        ignored = sorted(str(k) for k in v if k not in CONDITION_FIELDS)
        if ignored:
            logger.debug("Ignoring unrecognized conditions: %s", ", ".join(ignored))

        return normalized

    def allows_action(self, action: str) -> bool:
        """Whether this grant covers the given action."""
        return action in self.actions


class AgentPolicy(DocumentModel):
    """
    The grants one agent receives from a policy document.

    Attributes:
        id: Agent identifier (matched against the agent header)
        allow: Grants for this agent, in declaration order
    """

    id: str = Field(..., min_length=1, description="Agent identifier")
    allow: tuple[ToolAllowance, ...] = Field(
        default=(),
        description="Grants for this agent",
    )

    @field_validator("allow", mode="before")
    @classmethod
    def default_allow(cls, v: Any) -> Any:
        """Treat `allow:` with no entries as an empty list."""
        return () if v is None else v


class Policy(DocumentModel):
    """
    One parsed policy document.

    Attributes:
        version: Document version (required, non-empty)
        agents: Agent grants, in declaration order
        source_id: Stable identifier of the originating source; set by the
            loader and used as the store key
    """

    version: str = Field(..., min_length=1, description="Policy version")
    agents: tuple[AgentPolicy, ...] = Field(
        default=(),
        description="Agent grants",
    )
    source_id: str = Field(
        default="",
        description="Originating source (absolute file path)",
    )

    @field_validator("version", mode="before")
    @classmethod
    def stringify_version(cls, v: Any) -> Any:
        """Accept numeric versions passed in directly rather than from YAML."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("agents", mode="before")
    @classmethod
    def default_agents(cls, v: Any) -> Any:
        """Treat `agents:` with no entries as an empty list."""
        return () if v is None else v

    def agent_ids(self) -> list[str]:
        """Agent ids in declaration order, without duplicates."""
        return list(dict.fromkeys(agent.id for agent in self.agents))


# =============================================================================
# Runtime Models
# =============================================================================


class Decision(BaseModel):
    """
    Result of evaluating one call against the loaded policies.

    Attributes:
        allowed: Whether the call is permitted
        reason: Why it was denied (empty when allowed)
        source_id: Policy source of the allowance that decided, if any
        policy_version: Version of that policy, if any
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: bool
    reason: str = ""
    source_id: str | None = None
    policy_version: str | None = None

    @classmethod
    def allow(cls, policy: Policy | None = None) -> "Decision":
        """Create an ALLOW decision."""
        return cls(
            allowed=True,
            source_id=policy.source_id if policy else None,
            policy_version=policy.version if policy else None,
        )

    @classmethod
    def deny(cls, reason: str, policy: Policy | None = None) -> "Decision":
        """Create a DENY decision."""
        return cls(
            allowed=False,
            reason=reason,
            source_id=policy.source_id if policy else None,
            policy_version=policy.version if policy else None,
        )


# =============================================================================
# YAML Loading Helpers
# =============================================================================

_NUMERIC_TAGS = frozenset({"tag:yaml.org,2002:int", "tag:yaml.org,2002:float"})


def load_yaml_document(content: str) -> Any:
    """
    Parse one YAML document the way yaml.safe_load does.

    An unquoted numeric `version` keeps the text written in the file, so
    `version: 1.10` stays "1.10" instead of becoming the float 1.1.

    Raises:
        yaml.YAMLError: If the content is not valid YAML
    """
    loader = yaml.SafeLoader(content)
    try:
        node = loader.get_single_node()
        if node is None:
            return None
        data = loader.construct_document(node)
    finally:
        loader.dispose()

    if isinstance(data, dict) and isinstance(node, yaml.MappingNode):
        for key_node, value_node in node.value:
            if (
                isinstance(key_node, yaml.ScalarNode)
                and key_node.value == "version"
                and isinstance(value_node, yaml.ScalarNode)
                and value_node.tag in _NUMERIC_TAGS
            ):
                data["version"] = value_node.value
    return data


def parse_policy_document(data: Any, source_id: str = "") -> Policy:
    """
    Validate an already-parsed YAML document.

    Raises:
        ValueError: If the document is empty or not a mapping
        ValidationError: If the document doesn't match the schema
    """
    if data is None:
        msg = "policy document is empty"
        raise ValueError(msg)
    if not isinstance(data, dict):
        msg = f"policy document must be a mapping, got {type(data).__name__}"
        raise ValueError(msg)

    policy = Policy.model_validate(data)
    if source_id:
        policy = policy.model_copy(update={"source_id": source_id})
    return policy


def load_policy_from_string(content: str, source_id: str = "") -> Policy:
    """Load a policy from a YAML string."""
    data = load_yaml_document(content)
    return parse_policy_document(data, source_id)
