"""
Decision oracle module for the perpbot trading engine.

Provides prompt rendering for the four operating modes, the oracle gateway, decision
parsing and validation, and the safety-override layer.
"""

from .oracle import (
    DecisionOracleGateway,
    DecisionResult,
    DecisionValidationError,
    OpenOrderPlan,
    OracleAction,
    OracleBlockedError,
    OracleContext,
    OracleDecision,
    OracleError,
    OracleReply,
    OracleRequestError,
    OracleResponseError,
    StrategyUpdateSuggestion,
    apply_safety_overrides,
    prepare_strategy_update,
    validate_open_decision,
)
from .prompts import OperatingMode, RenderedPrompt, render_prompt, select_mode

__all__ = [
    # Prompts
    "OperatingMode",
    "RenderedPrompt",
    "render_prompt",
    "select_mode",
    # Oracle
    "DecisionOracleGateway",
    "OracleContext",
    "OracleReply",
    "OracleAction",
    "OracleDecision",
    "StrategyUpdateSuggestion",
    "DecisionResult",
    "OpenOrderPlan",
    "apply_safety_overrides",
    "validate_open_decision",
    "prepare_strategy_update",
    # Errors
    "OracleError",
    "OracleRequestError",
    "OracleBlockedError",
    "OracleResponseError",
    "DecisionValidationError",
]
