"""
Node widgets: the editable values that become literal prompt inputs.

Widgets are built from node definition input specs:
    INT / FLOAT      -> "number"
    STRING           -> "text" (or "customtext" when multiline)
    BOOLEAN          -> "toggle"
    [choice, ...]    -> "combo"
Seed-like INT inputs get a companion "control_after_generate" widget whose
after-queued hook advances the seed between submissions.
"""

from __future__ import annotations

import inspect
import logging
import math
import random
from typing import Any, Callable

logger = logging.getLogger(__name__)

WIDGET_TYPES = ("INT", "FLOAT", "STRING", "BOOLEAN")
CONTROL_WIDGET_NAME = "control_after_generate"
CONTROL_VALUES = ["fixed", "increment", "decrement", "randomize"]
SEED_INPUT_NAMES = {"seed", "noise_seed"}
MAX_SEED_RANGE = 1125899906842624


class Widget:
    """A single named value on a node."""

    def __init__(
        self,
        name: str,
        value: Any = None,
        *,
        type: str = "text",
        options: dict[str, Any] | None = None,
        serialize_value: Callable[..., Any] | None = None,
        before_queued: Callable[[], None] | None = None,
        after_queued: Callable[[], None] | None = None,
        callback: Callable[[Any], None] | None = None,
    ):
        self.name = name
        self.value = value
        self.type = type
        self.options: dict[str, Any] = dict(options or {})
        self.serialize_value = serialize_value
        self.before_queued = before_queued
        self.after_queued = after_queued
        self.callback = callback

    def __repr__(self) -> str:
        return f"Widget({self.name!r}, {self.value!r}, type={self.type!r})"

    @property
    def serializable(self) -> bool:
        return self.options.get("serialize", True) is not False

    def set_value(self, value: Any, *, notify: bool = True) -> None:
        self.value = value
        if notify and self.callback is not None:
            self.callback(value)

    async def serialize(self, node: Any, index: int) -> Any:
        """Value sent to the backend; awaits the serialize hook when it is async."""
        if self.serialize_value is None:
            return self.value
        result = self.serialize_value(node, index)
        if inspect.isawaitable(result):
            result = await result
        return result


def is_widget_input(input_type: Any, options: dict[str, Any] | None = None) -> bool:
    """True when a definition input is rendered as a widget rather than a slot."""
    if options and options.get("forceInput"):
        return False
    return isinstance(input_type, list) or input_type in WIDGET_TYPES


def create_widgets(
    name: str,
    input_type: Any,
    options: dict[str, Any] | None = None,
    *,
    rng: random.Random | None = None,
) -> list[Widget]:
    """Build the widget(s) for one definition input."""
    options = dict(options or {})

    if isinstance(input_type, list):
        choices = list(input_type)
        default = options.get("default", choices[0] if choices else None)
        return [Widget(name, default, type="combo", options={"values": choices})]

    if input_type == "INT":
        widget = Widget(
            name,
            int(options.get("default", 0)),
            type="number",
            options={
                "min": options.get("min", 0),
                "max": options.get("max", 2048),
                "step": options.get("step", 1),
                "precision": 0,
            },
        )
        if options.get(CONTROL_WIDGET_NAME) or name in SEED_INPUT_NAMES:
            control = add_value_control_widget(widget, rng=rng)
            return [widget, control]
        return [widget]

    if input_type == "FLOAT":
        return [
            Widget(
                name,
                float(options.get("default", 0.0)),
                type="number",
                options={
                    "min": options.get("min", 0.0),
                    "max": options.get("max", 2048.0),
                    "step": options.get("step", 0.5),
                    "round": options.get("round", 0.01),
                },
            )
        ]

    if input_type == "STRING":
        widget_type = "customtext" if options.get("multiline") else "text"
        return [Widget(name, options.get("default", ""), type=widget_type)]

    if input_type == "BOOLEAN":
        return [
            Widget(
                name,
                bool(options.get("default", False)),
                type="toggle",
                options={"on": options.get("label_on"), "off": options.get("label_off")},
            )
        ]

    raise ValueError(f"Input type '{input_type}' is not a widget type")


def add_value_control_widget(
    target: Widget,
    default: str = "randomize",
    *,
    rng: random.Random | None = None,
) -> Widget:
    """
    Create a control widget that advances `target` after each queued prompt.

    The control itself is never sent to the backend (serialize=False) but is
    kept in the saved workflow.
    """
    control = Widget(
        CONTROL_WIDGET_NAME,
        default,
        type="combo",
        options={"values": list(CONTROL_VALUES), "serialize": False},
    )
    control.after_queued = lambda: apply_value_control(control.value, target, rng=rng)
    target.options["linked_control"] = CONTROL_WIDGET_NAME
    return control


def apply_value_control(mode: Any, target: Widget, *, rng: random.Random | None = None) -> None:
    """Advance `target` according to a control mode."""
    source = rng or random
    if mode == "fixed" or mode not in CONTROL_VALUES:
        return

    if target.type == "combo":
        values = target.options.get("values") or []
        if not values:
            return
        try:
            current = values.index(target.value)
        except ValueError:
            current = 0
        if mode == "increment":
            index = min(current + 1, len(values) - 1)
        elif mode == "decrement":
            index = max(current - 1, 0)
        else:
            index = source.randrange(len(values))
        target.set_value(values[index])
        return

    step = target.options.get("step", 1) or 1
    minimum = target.options.get("min", 0)
    maximum = target.options.get("max", MAX_SEED_RANGE)
    value = target.value if isinstance(target.value, (int, float)) else minimum

    if mode == "increment":
        value = value + step
    elif mode == "decrement":
        value = value - step
    else:
        low = max(-MAX_SEED_RANGE, minimum)
        high = min(MAX_SEED_RANGE, maximum)
        span = int((high - low) / step)
        value = math.floor(source.random() * span) * step + low

    if maximum is not None and value > maximum:
        value = maximum
    if minimum is not None and value < minimum:
        value = minimum
    if target.options.get("precision") == 0:
        value = int(value)
    logger.debug("Control '%s' moved widget '%s' to %s", mode, target.name, value)
    target.set_value(value)
