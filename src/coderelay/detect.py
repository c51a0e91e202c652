"""Heuristic language detection for generated code.

Checks run in a fixed order: Python, then JavaScript/TypeScript, then shell.
The first family with a matching token wins and anything unmatched falls
back to JavaScript, so ambiguous input always resolves the same way.
"""

import re

from coderelay.execution import Language

# A leading ``#`` comment, but not a ``#!`` shebang.
_LEADING_COMMENT = re.compile(r"#(?!!)")

_PYTHON_TOKENS = ("def ", "import ", "print(")
_JAVASCRIPT_TOKENS = ("function ", "const ", "let ", "=>", "console.log")
_SHELL_TOKENS = ("#!/bin/bash", "echo ", "export ")


def detect_language(code: str) -> Language:
    trimmed = code.strip()

    if any(token in trimmed for token in _PYTHON_TOKENS) or _LEADING_COMMENT.match(trimmed):
        return Language.PYTHON

    if any(token in trimmed for token in _JAVASCRIPT_TOKENS):
        return Language.JAVASCRIPT

    if trimmed.startswith("#!") or any(token in trimmed for token in _SHELL_TOKENS):
        return Language.SHELL

    return Language.JAVASCRIPT
