"""choreo-pipeline: Execution engine for Choreo pipeline definitions."""

__version__ = "0.1.0"

from choreo_pipeline.config import EngineSettings, PipelineType, load_settings, system_environment
from choreo_pipeline.engine import (
    FailureClass,
    PipelineEngine,
    PipelineOutcome,
    PipelineResult,
    StepRecord,
    StepState,
)
from choreo_pipeline.expressions import (
    ExpressionResolver,
    MappingAccessor,
    ResolutionContext,
    Scope,
    ScopeAccessor,
)
from choreo_pipeline.graph import build_stages
from choreo_pipeline.loader import load_pipeline, parse_pipeline, validate_pipeline
from choreo_pipeline.models import (
    ParallelGroup,
    PipelineDefinition,
    Step,
    StepStage,
    TemplateDefinition,
)
from choreo_pipeline.outputs import OutputStore
from choreo_pipeline.policy import PipelinePolicy, PolicyEnforcer, policy_for
from choreo_pipeline.runners import HttpRunner, LocalRunner, StepOutcome, StepRequest, StepRunner, register_builtin
from choreo_pipeline.templates import TemplateRegistry

__all__ = [
    # Loading
    "load_pipeline",
    "parse_pipeline",
    "validate_pipeline",
    "build_stages",
    # Models
    "PipelineDefinition",
    "Step",
    "StepStage",
    "ParallelGroup",
    "TemplateDefinition",
    "TemplateRegistry",
    # Expressions
    "ExpressionResolver",
    "ResolutionContext",
    "MappingAccessor",
    "Scope",
    "ScopeAccessor",
    "OutputStore",
    # Policy and settings
    "EngineSettings",
    "PipelineType",
    "PipelinePolicy",
    "PolicyEnforcer",
    "load_settings",
    "policy_for",
    "system_environment",
    # Execution
    "PipelineEngine",
    "PipelineResult",
    "PipelineOutcome",
    "StepRecord",
    "StepState",
    "FailureClass",
    "StepRunner",
    "StepRequest",
    "StepOutcome",
    "LocalRunner",
    "HttpRunner",
    "register_builtin",
]
