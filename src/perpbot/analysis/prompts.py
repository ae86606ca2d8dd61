"""
Instruction prompts for the decision oracle.

The prompt is assembled from fixed blocks: a shared preamble, one of four operating
modes chosen by (sizing method x self-update permission), and the context document.
Every mode lists the same three actions; only the quantity instruction and the
strategy-update section differ.
"""

from dataclasses import dataclass
from enum import Enum
import json
from typing import Any

from perpbot.config.constants import SIZING_INITIAL_MARGIN_TARGET


class OperatingMode(Enum):
    """Prompt variant; the value is the mode header shown to the oracle."""

    ADAPTIVE = "ADAPTIVE (AI Quantity, Self-Improving Strategy)"
    TACTICAL = "TACTICAL (AI Quantity, Fixed Strategy)"
    MECHANICAL = "MECHANICAL (Fixed Quantity, Self-Improving Strategy)"
    EXECUTOR = "EXECUTOR (Fixed Quantity, Fixed Strategy)"

    @property
    def formula_sizing(self) -> bool:
        return self in (OperatingMode.MECHANICAL, OperatingMode.EXECUTOR)

    @property
    def allows_strategy_update(self) -> bool:
        return self in (OperatingMode.ADAPTIVE, OperatingMode.MECHANICAL)


def select_mode(sizing_method: str, allow_self_update: bool) -> OperatingMode:
    formula = sizing_method.upper() == SIZING_INITIAL_MARGIN_TARGET
    if formula:
        return OperatingMode.MECHANICAL if allow_self_update else OperatingMode.EXECUTOR
    return OperatingMode.ADAPTIVE if allow_self_update else OperatingMode.TACTICAL


# =============================================================================
# Blocks
# =============================================================================

PREAMBLE = """You are a trading decision model. Your sole function is to analyze the provided JSON context and return a single, valid JSON action. You must operate exclusively within the rules defined in this prompt.

**CRITICAL RULES:**
1.  **Strict JSON Output:** Your entire response MUST be a single, valid JSON object without any markdown, comments, or extraneous text.
2.  **Mandatory Precision:** All `price` and `quantity` values in your response MUST conform to the exact decimal precision specified in `market_data.symbol_precision`. Failure to do so will result in a rejected order. This is a non-negotiable, critical instruction."""

AI_QUANTITY_FIELD = "(float, your calculated value, respecting precision)"

FORMULA_QUANTITY_FIELD = (
    "(float, **MANDATORY CALCULATION**: You must calculate this value using the formula "
    "`(bot_configuration_summary_for_ai.initialMarginTargetUsdt * leverage) / entryPrice`, "
    "and then format the result to the required precision.)"
)

OPEN_EXAMPLE: dict[str, Any] = {
    "action": "OPEN_POSITION",
    "leverage": 10,
    "side": "BUY",
    "entryPrice": 29000.0,
    "quantity": 0.001,
    "stopLossPrice": 28500.0,
    "takeProfitPrice": 29500.0,
    "rationale": "Price action indicates strong bullish momentum after retesting support.",
}

CLOSE_EXAMPLE: dict[str, Any] = {
    "action": "CLOSE_POSITION",
    "rationale": "Reached take profit target and market shows signs of reversal.",
}

HOLD_EXAMPLE: dict[str, Any] = {
    "action": "HOLD_POSITION",
    "rationale": "Current position is healthy, and no new clear signals for entry or exit.",
}

UPDATE_EXAMPLE: dict[str, Any] = {
    "action": "HOLD_POSITION",
    "rationale": "No immediate trade, but strategy needs refinement.",
    "suggested_strategy_directives_update": {
        "reason_for_update": "Adjusting risk parameters based on recent volatility.",
        "updated_directives": {
            "schema_version": "1.0.0",
            "strategy_type": "GENERAL_TRADING",
            "current_market_bias": "NEUTRAL",
            "preferred_timeframes_for_entry": ["1m", "5m", "15m"],
            "key_sr_levels_to_watch": {"support": [], "resistance": []},
            "risk_parameters": {
                "target_risk_per_trade_usdt": 0.75,
                "default_rr_ratio": 2.5,
                "max_concurrent_positions": 1,
            },
            "entry_conditions_keywords": ["momentum_confirm", "breakout_consolidation"],
            "exit_conditions_keywords": ["momentum_stall", "target_profit_achieved"],
            "leverage_preference": {"min": 5, "max": 10, "preferred": 10},
            "ai_confidence_threshold_for_trade": 0.7,
            "ai_learnings_notes": "Adjusted risk per trade and R:R ratio.",
            "emergency_hold_justification": "Wait for clear market signal or manual intervention.",
        },
    },
}

UPDATE_SECTION = """**OPTIONAL STRATEGY UPDATE:**
If your analysis indicates the `current_guiding_trade_logic_source` is flawed, you MAY add the `suggested_strategy_directives_update` key to your response. This does NOT replace the main `action`.
- `suggested_strategy_directives_update`:
    - `reason_for_update`: (string)
    - `updated_directives`: A complete JSON object for the new `strategy_directives`.
    **Example:**
{example}"""

RESTRICTION_SECTION = "**RESTRICTION:** You are forbidden from suggesting strategy updates."

CONTEXT_SECTION = """**CONTEXT (JSON):**
{context}

Based on the rules for your current operating mode and the context provided, return your decision as a single JSON object."""


def _example(payload: dict[str, Any]) -> str:
    body = json.dumps(payload, indent=2)
    indented = "\n".join(f"    {line}" for line in body.splitlines())
    return f"    ```json\n{indented}\n    ```"


def render_actions(mode: OperatingMode) -> str:
    """Mode header plus the action catalogue and the update/restriction clause."""
    quantity = FORMULA_QUANTITY_FIELD if mode.formula_sizing else AI_QUANTITY_FIELD
    lines = [
        f"**OPERATING MODE: {mode.value}**",
        "",
        "**AVAILABLE ACTIONS & JSON RESPONSE FORMAT:**",
        "",
        "1.  **OPEN_POSITION**: Initiate a new trade.",
        '    - `action`: "OPEN_POSITION"',
        "    - `leverage`: (integer)",
        '    - `side`: "BUY" or "SELL"',
        "    - `entryPrice`: (float, respecting precision)",
        f"    - `quantity`: {quantity}",
        "    - `stopLossPrice`: (float, respecting precision)",
        "    - `takeProfitPrice`: (float, respecting precision)",
        "    - `rationale`: (string, brief justification)",
        "    **Example:**",
        _example(OPEN_EXAMPLE),
        "",
        "2.  **CLOSE_POSITION**: Close the existing position at market price.",
        '    - `action`: "CLOSE_POSITION"',
        "    - `rationale`: (string)",
        "    **Example:**",
        _example(CLOSE_EXAMPLE),
        "",
        "3.  **HOLD_POSITION / DO_NOTHING**: Maintain the current state.",
        '    - `action`: "HOLD_POSITION" or "DO_NOTHING"',
        "    - `rationale`: (string)",
        "    **Example:**",
        _example(HOLD_EXAMPLE),
        "",
    ]
    if mode.allows_strategy_update:
        lines.append(UPDATE_SECTION.format(example=_example(UPDATE_EXAMPLE)))
    else:
        lines.append(RESTRICTION_SECTION)
    return "\n".join(lines)


@dataclass(frozen=True)
class RenderedPrompt:
    mode: OperatingMode
    text: str


def render_prompt(context: dict[str, Any], sizing_method: str, allow_self_update: bool) -> RenderedPrompt:
    """
    Render the full instruction prompt for one decision cycle.

    Args:
        context: Context document collected for the cycle
        sizing_method: ``AI_SUGGESTED`` or ``INITIAL_MARGIN_TARGET``
        allow_self_update: Whether the active directives permit strategy updates

    Returns:
        The selected mode and the prompt text with the context JSON embedded
    """
    mode = select_mode(sizing_method, allow_self_update)
    context_json = json.dumps(context, default=str, ensure_ascii=False)
    parts = [
        PREAMBLE,
        render_actions(mode),
        CONTEXT_SECTION.format(context=context_json),
    ]
    return RenderedPrompt(mode=mode, text="\n\n".join(parts))
