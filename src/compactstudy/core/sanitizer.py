"""Unicode math glyph -> LaTeX normalization used when lifting plain-text notation."""
from __future__ import annotations

import re
from typing import Dict

# Multi-character sequences must be replaced before their single-glyph parts.
SEQUENCE_LATEX_MAP: Dict[str, str] = {
    "∉": r"\notin",
    "⊈": r"\nsubseteq",
    "≱": r"\ngeq",
    "≰": r"\nleq",
}

UNICODE_LATEX_MAP: Dict[str, str] = {
    "−": "-",
    "∈": r"\in",
    "∪": r"\cup",
    "∩": r"\cap",
    "⊆": r"\subseteq",
    "⊂": r"\subset",
    "⊇": r"\supseteq",
    "⊃": r"\supset",
    "∅": r"\emptyset",
    "∞": r"\infty",
    "⇒": r"\Rightarrow",
    "→": r"\rightarrow",
    "↔": r"\leftrightarrow",
    "≤": r"\leq",
    "≥": r"\geq",
    "≠": r"\neq",
    "≈": r"\approx",
    "≡": r"\equiv",
    "±": r"\pm",
    "∑": r"\sum",
    "∏": r"\prod",
    "∫": r"\int",
    "×": r"\times",
    "÷": r"\div",
    "·": r"\cdot",
    "∀": r"\forall",
    "∃": r"\exists",
    "∧": r"\land",
    "∨": r"\lor",
    "¬": r"\neg",
    "²": "^{2}",
    "³": "^{3}",
    "α": r"\alpha",
    "β": r"\beta",
    "γ": r"\gamma",
    "δ": r"\delta",
    "ε": r"\epsilon",
    "θ": r"\theta",
    "λ": r"\lambda",
    "μ": r"\mu",
    "π": r"\pi",
    "ρ": r"\rho",
    "σ": r"\sigma",
    "φ": r"\phi",
    "ω": r"\omega",
    "Σ": r"\Sigma",
    "Ω": r"\Omega",
}

CONTROL_CHAR_TRANSLATION = {code: " " for code in range(0, 32)}
for code in (9, 10, 13):
    CONTROL_CHAR_TRANSLATION.pop(code, None)
CONTROL_CHAR_TRANSLATION[0x7F] = " "


def _replace_glyph(text: str, needle: str, replacement: str) -> str:
    if replacement[-1:].isalpha() and replacement.startswith("\\"):
        # "\cupB" would parse as an unknown command.
        text = re.sub(re.escape(needle) + r"(?=[A-Za-z0-9])", lambda _: replacement + " ", text)
    return text.replace(needle, replacement)


def sanitize_unicode_to_latex(payload: str) -> str:
    """Replace Unicode math glyphs with LaTeX macros."""

    if not payload:
        return payload
    sanitized = payload.translate(CONTROL_CHAR_TRANSLATION)
    for needle, replacement in SEQUENCE_LATEX_MAP.items():
        sanitized = _replace_glyph(sanitized, needle, replacement)
    for needle, replacement in UNICODE_LATEX_MAP.items():
        sanitized = _replace_glyph(sanitized, needle, replacement)
    return sanitized


__all__ = ["SEQUENCE_LATEX_MAP", "UNICODE_LATEX_MAP", "sanitize_unicode_to_latex"]
