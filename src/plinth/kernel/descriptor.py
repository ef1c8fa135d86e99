"""Pydantic models for the resource descriptor with strict validation."""

import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from plinth.errors import ValidationError
from .hash_utils import CanonicalizationError, hash_attributes, validate_json_type


# Resource type -> attributes that must be present in the descriptor.
# Computed attributes (urls, connection names) are never required here.
RESOURCE_TYPES: Dict[str, tuple[str, ...]] = {
    "capability": ("service",),
    "compute_service": ("image", "region"),
    "sql_instance": ("database_version", "region", "tier"),
    "sql_database": ("instance",),
    "sql_user": ("instance", "password"),
    "registry": ("location", "repository_id", "format"),
    "service_account": ("account_id",),
    "iam_binding": ("role", "member"),
    "build": (),
}

HEALTH_PROBE_ATTRIBUTES = ("health_check", "startup_probe", "liveness_probe")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_VAR_RE = re.compile(r"\$\{var\.([A-Za-z_][A-Za-z0-9_]*)\}")


def join_ref(*parts: str) -> str:
    """Join registry path segments with single '/' separators.

    Leading and trailing slashes on each segment are dropped, so
    ``join_ref("reg/path/", "/wiki")`` is ``"reg/path/wiki"``.
    """
    segments = [p.strip("/") for p in parts if p and p.strip("/")]
    return "/".join(segments)


class FixedDelayGateSpec(BaseModel):
    """Flat wait, used when the platform offers no observable completion signal."""
    kind: Literal["fixed_delay"]
    seconds: float = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class PollGateSpec(BaseModel):
    """Poll a node attribute until it reaches a terminal value."""
    kind: Literal["poll"]
    field: str
    ready_values: tuple[str, ...] = Field(..., min_length=1)
    failed_values: tuple[str, ...] = ()
    interval: float = Field(5.0, gt=0)
    max_attempts: int = Field(60, ge=1)
    backoff: Literal["fixed", "exponential"] = "fixed"
    max_interval: float = Field(60.0, gt=0)

    model_config = ConfigDict(extra="forbid", frozen=True)


GateSpec = Annotated[Union[FixedDelayGateSpec, PollGateSpec], Field(discriminator="kind")]


class BuildSpec(BaseModel):
    """Image mirror: pull a named upstream image, retag it under the target
    repository with every tag, push every tag."""
    source_image: str
    target_repository: str
    image_name: str
    tags: tuple[str, ...] = Field(..., description="Pinned version first, then rolling aliases")

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator('tags', mode='before')
    @classmethod
    def coerce_numeric_tags(cls, v: Any) -> Any:
        """Version variables such as ``--var wiki_version=3`` arrive as numbers."""
        if isinstance(v, (list, tuple)):
            return [
                str(tag) if isinstance(tag, (int, float)) and not isinstance(tag, bool) else tag
                for tag in v
            ]
        return v

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """At least a pinned version and a rolling alias; no duplicates."""
        if len(v) < 2:
            raise ValueError(
                f"Build requires at least two tags (pinned version and rolling alias), got {list(v)}"
            )
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate tags not allowed: {sorted(v)}")
        for tag in v:
            if not tag or ":" in tag or "/" in tag:
                raise ValueError(f"Invalid tag '{tag}'")
        return v

    @property
    def image_repository(self) -> str:
        """Registry location of the mirrored image, without a tag."""
        return join_ref(self.target_repository, self.image_name)

    @property
    def target_refs(self) -> List[str]:
        """Fully qualified refs, one per tag, in declaration order."""
        return [f"{self.image_repository}:{tag}" for tag in self.tags]

    def hash(self) -> str:
        return hash_attributes(self.model_dump(mode="json"))


class HealthProbe(BaseModel):
    """HTTP health contract of the hosted application."""
    path: str
    port: int = Field(..., ge=1, le=65535)
    initial_delay_seconds: int = Field(0, ge=0)
    timeout_seconds: int = Field(1, ge=1)
    period_seconds: int = Field(10, ge=1)
    failure_threshold: int = Field(3, ge=1)

    model_config = ConfigDict(extra="forbid")

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Health check path '{v}' must start with '/'")
        return v

    @model_validator(mode="after")
    def validate_timing(self) -> "HealthProbe":
        if self.timeout_seconds > self.period_seconds:
            raise ValueError(
                f"timeout_seconds ({self.timeout_seconds}) must not exceed period_seconds ({self.period_seconds})"
            )
        return self


class ResourceNode(BaseModel):
    """One declared resource. Immutable once loaded."""
    type: str
    name: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = Field(default=(), description="Canonicalized tuple of node ids (sorted, no duplicates)")
    gate: Optional[GateSpec] = None
    build: Optional[BuildSpec] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError(f"Resource name '{v}' must match {_NAME_RE.pattern}")
        return v

    @field_validator('depends_on')
    @classmethod
    def validate_depends_on(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Canonicalize dependency references to a sorted tuple.

        Rules:
        - Must be node ids of the form "<type>.<name>"
        - No duplicates allowed (validation error)
        """
        for dep in v:
            if dep.count(".") != 1:
                raise ValueError(f"Dependency '{dep}' must be a node id of the form '<type>.<name>'")
        seen = set()
        duplicates = set()
        for dep in v:
            if dep in seen:
                duplicates.add(dep)
            seen.add(dep)
        if duplicates:
            raise ValueError(f"Duplicate dependencies not allowed: {sorted(duplicates)}")
        return tuple(sorted(v))

    @field_validator('attributes')
    @classmethod
    def validate_attributes(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Attributes must be canonical JSON so their hash is stable."""
        try:
            validate_json_type(v)
        except CanonicalizationError as e:
            raise ValueError(str(e))
        return v

    @model_validator(mode="after")
    def validate_type_contract(self) -> "ResourceNode":
        if self.type not in RESOURCE_TYPES:
            raise ValueError(
                f"Unknown resource type '{self.type}' (expected one of: {', '.join(sorted(RESOURCE_TYPES))})"
            )
        missing = [a for a in RESOURCE_TYPES[self.type] if a not in self.attributes]
        if missing:
            raise ValueError(
                f"Resource '{self.id}' is missing required attributes: {', '.join(missing)}"
            )
        if self.type == "build" and self.build is None:
            raise ValueError(f"Resource '{self.id}' of type 'build' requires a 'build' block")
        if self.type != "build" and self.build is not None:
            raise ValueError(f"Resource '{self.id}' declares a 'build' block but is not of type 'build'")
        if self.type == "compute_service":
            for probe in HEALTH_PROBE_ATTRIBUTES:
                if probe in self.attributes:
                    try:
                        HealthProbe.model_validate(self.attributes[probe])
                    except PydanticValidationError as e:
                        raise ValueError(f"Resource '{self.id}' {probe}: {_format_pydantic_error(e)}")
        return self

    @property
    def id(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def is_build(self) -> bool:
        return self.build is not None

    def desired_hash(self) -> str:
        """Hash of everything that defines this node's intent."""
        if self.build is not None:
            return self.build.hash()
        return hash_attributes(self.attributes)


class VariableSpec(BaseModel):
    """A descriptor variable."""
    default: Any = None
    sensitive: bool = False
    description: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class OutputSpec(BaseModel):
    """A named value projected from a Ready node."""
    name: str
    node: str
    attribute: str
    path: tuple[str, ...] = ()
    sensitive: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)


class _DescriptorEnvelope(BaseModel):
    """Top-level shape, checked before variables are substituted."""
    descriptor_version: str
    name: str
    variables: Dict[str, VariableSpec] = Field(default_factory=dict)
    resources: List[Dict[str, Any]]
    outputs: List[OutputSpec] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @field_validator('descriptor_version')
    @classmethod
    def validate_version(cls, v: str) -> str:
        if v != "1":
            raise ValueError(f"Unsupported descriptor_version '{v}' (expected '1')")
        return v


class Descriptor(_DescriptorEnvelope):
    """A resource descriptor document with variables substituted."""
    resources: List[ResourceNode]

    def sensitive_values(self, values: Dict[str, Any]) -> set[str]:
        """String values of sensitive variables, for masking in reports."""
        return {
            str(values[name])
            for name, var in self.variables.items()
            if var.sensitive and values.get(name) is not None
        }


def _format_pydantic_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def resolve_variables(descriptor_vars: Dict[str, VariableSpec], overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge declared defaults with caller overrides.

    Overrides for undeclared variables are rejected.
    """
    overrides = overrides or {}
    undeclared = set(overrides) - set(descriptor_vars)
    if undeclared:
        raise ValidationError(f"Undeclared variables supplied: {', '.join(sorted(undeclared))}")
    values: Dict[str, Any] = {name: var.default for name, var in descriptor_vars.items()}
    values.update(overrides)
    return values


def substitute_variables(obj: Any, values: Dict[str, Any], path: str = "") -> Any:
    """Replace ${var.NAME} references inside strings.

    A string consisting of exactly one reference takes the variable's raw
    value (which may be an int or bool); otherwise the value is interpolated.
    """
    if isinstance(obj, str):
        def lookup(name: str) -> Any:
            if name not in values:
                raise ValidationError(f"Undefined variable '{name}' referenced at {path or '<root>'}")
            if values[name] is None:
                raise ValidationError(f"Variable '{name}' has no value (referenced at {path or '<root>'})")
            return values[name]

        whole = _VAR_RE.fullmatch(obj)
        if whole:
            return lookup(whole.group(1))
        return _VAR_RE.sub(lambda m: str(lookup(m.group(1))), obj)
    elif isinstance(obj, dict):
        return {k: substitute_variables(v, values, f"{path}.{k}" if path else k) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [substitute_variables(item, values, f"{path}[{i}]") for i, item in enumerate(obj)]
    return obj


def parse_descriptor(data: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> tuple[Descriptor, Dict[str, Any]]:
    """Parse a descriptor dict and resolve its variables.

    Returns the descriptor with substituted resources, plus the variable
    values used. Raises plinth ValidationError on any structural problem.
    """
    if not isinstance(data, dict):
        raise ValidationError("Descriptor must be a JSON object")
    try:
        envelope = _DescriptorEnvelope.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid descriptor: {_format_pydantic_error(e)}")

    values = resolve_variables(envelope.variables, overrides)
    resolved = dict(data)
    resolved["resources"] = substitute_variables(envelope.resources, values, "resources")
    try:
        descriptor = Descriptor.model_validate(resolved)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid descriptor after variable substitution: {_format_pydantic_error(e)}")

    seen: set[str] = set()
    for node in descriptor.resources:
        if node.id in seen:
            raise ValidationError(f"Duplicate resource id: {node.id}")
        seen.add(node.id)
    names = [o.name for o in descriptor.outputs]
    if len(set(names)) != len(names):
        raise ValidationError(f"Duplicate output names: {sorted({n for n in names if names.count(n) > 1})}")
    return descriptor, values

