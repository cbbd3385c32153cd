"""Plan file loading and parameter substitution."""

from cloudplan.specs.loader import PlanFile, ResourceEntry, build_plan, load_plan, load_plan_file
from cloudplan.specs.variable_substitution import (
    VariableSubstitutor,
    parse_param_overrides,
    substitute_variables,
)

__all__ = [
    "PlanFile",
    "ResourceEntry",
    "VariableSubstitutor",
    "build_plan",
    "load_plan",
    "load_plan_file",
    "parse_param_overrides",
    "substitute_variables",
]
