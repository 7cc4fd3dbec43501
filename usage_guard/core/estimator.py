"""
Unit estimation for pre-flight quota checks.

Approximates billable units from raw content before the expensive call
runs. Estimates are deliberately cheap: character length adjusted by how
symbol-dense the text is, plus fixed framing overheads.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence, Union

# Characters typical of code and structured data rather than prose
SYMBOL_CHARACTERS = frozenset("{}[]()<>;:=+-*/\\|&^%$#@!~`\"'")

PROSE_CHARS_PER_UNIT = 4.0
CODE_CHARS_PER_UNIT = 3.5
# Symbol fraction at which text is treated as fully code-like
CODE_SYMBOL_DENSITY = 0.25

MESSAGE_OVERHEAD_UNITS = 4
REQUEST_OVERHEAD_UNITS = 3

DEFAULT_MAX_OUTPUT_UNITS = 4000

Message = Union[Mapping[str, object], str]


@dataclass(frozen=True)
class UnitUsage:
    """Measured unit counts for one metered operation."""
    input_units: int
    output_units: int

    @property
    def total_units(self) -> int:
        """Total units used (input + output)."""
        return self.input_units + self.output_units


@dataclass(frozen=True)
class OutputTier:
    """Response-size policy for one band of input sizes."""
    max_input_units: Optional[int]
    ratio: float
    floor: int
    cap: Optional[int]


OUTPUT_TIERS = (
    OutputTier(max_input_units=100, ratio=1.0, floor=32, cap=200),
    OutputTier(max_input_units=1000, ratio=0.4, floor=64, cap=1000),
    OutputTier(max_input_units=None, ratio=0.3, floor=128, cap=None),
)


@dataclass(frozen=True)
class RequestEstimate:
    """Pre-flight estimate for a whole request."""
    input_units: int
    predicted_output_units: int

    @property
    def total(self) -> int:
        return self.input_units + self.predicted_output_units


def estimate_units(text: Optional[str]) -> int:
    """Estimate the unit count of a piece of text.

    Prose averages about 4 characters per unit; symbol-heavy code is closer
    to 3.5. The divisor is interpolated on the share of symbol characters.

    Args:
        text: Text to size; None and "" yield 0

    Returns:
        Estimated unit count, rounded up
    """
    if not text:
        return 0

    length = len(text)
    symbols = sum(1 for ch in text if ch in SYMBOL_CHARACTERS)
    density = min(1.0, (symbols / length) / CODE_SYMBOL_DENSITY)
    divisor = PROSE_CHARS_PER_UNIT - (PROSE_CHARS_PER_UNIT - CODE_CHARS_PER_UNIT) * density
    return math.ceil(length / divisor)


def predict_output_units(
    input_units: int,
    max_output_units: int = DEFAULT_MAX_OUTPUT_UNITS,
) -> int:
    """Predict the response share of consumption from the input size.

    Small prompts get small floors so a two-word question is not charged
    a flat minimum sized for long documents.
    """
    if input_units < 0:
        raise ValueError("input_units cannot be negative")

    for tier in OUTPUT_TIERS:
        if tier.max_input_units is None or input_units <= tier.max_input_units:
            break
    cap = tier.cap if tier.cap is not None else max_output_units

    predicted = int(math.floor(input_units * tier.ratio + 0.5))
    return max(tier.floor, min(predicted, cap))


def _message_content(message: Message) -> Optional[str]:
    if isinstance(message, str):
        return message
    content = message.get("content")
    if content is None:
        return None
    if isinstance(content, str):
        return content
    # Multi-part content: list of {"type": "text", "text": ...} parts
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
            parts.append(part["text"])
    return "".join(parts)


def estimate_request(
    messages: Sequence[Message],
    reference_material: Optional[Iterable[str]] = None,
    preamble: Optional[str] = None,
    max_output_units: int = DEFAULT_MAX_OUTPUT_UNITS,
) -> RequestEstimate:
    """Estimate input and predicted output units for a chat request.

    Args:
        messages: Conversation history, as mappings with ``content`` or strings
        reference_material: Attached documents included in the prompt
        preamble: System prompt
        max_output_units: Output cap for the largest input tier

    Returns:
        RequestEstimate with input, predicted output and total units
    """
    input_units = REQUEST_OVERHEAD_UNITS
    for message in messages or ():
        input_units += estimate_units(_message_content(message)) + MESSAGE_OVERHEAD_UNITS

    for document in reference_material or ():
        input_units += estimate_units(document)

    input_units += estimate_units(preamble)

    return RequestEstimate(
        input_units=input_units,
        predicted_output_units=predict_output_units(input_units, max_output_units),
    )
