# querygate/core/guard/permission.py
"""
PERMISSION CONTROLLER - Static security rules for one request

Purpose:
    1. Decide whether an operation is allowed in the configured security mode
    2. Measure how "natural" an input looks (Shannon entropy)
    3. Spot forbidden keywords anywhere in the input

Everything here is a pure function of the input and the (frozen) security
settings, so the controller needs no locking.
"""

import math
import unicodedata
from collections import Counter
from typing import Optional

from querygate.core.config import SecuritySettings


def is_separator(char: str) -> bool:
    """Whitespace or any Unicode punctuation (categories Pc, Pd, Ps, Pe, Pi, Pf, Po)."""
    return char.isspace() or unicodedata.category(char).startswith("P")


class PermissionController:
    def __init__(self, security: SecuritySettings):
        self.security = security

    def check_operation_permission(self, operation: str) -> bool:
        mode = self.security.mode
        if mode == "read_only":
            return operation.casefold() == "select"
        if mode == "read_write":
            return True

        # Any other mode: only the explicit allow-list counts
        wanted = operation.casefold()
        return any(allowed.casefold() == wanted for allowed in self.security.allowed_operations)

    def check_semantic_safety(self, input_text: str) -> bool:
        entropy = self.calculate_entropy(input_text)
        bounds = self.security.input_validation
        return bounds.min_entropy <= entropy <= bounds.max_entropy

    def check_forbidden_keywords(self, input_text: str) -> Optional[str]:
        """Return the first forbidden keyword contained in the input, if any."""
        lowered = input_text.lower()
        for keyword in self.security.forbidden_keywords:
            if keyword.lower() in lowered:
                return keyword
        return None

    @staticmethod
    def calculate_entropy(input_text: str) -> float:
        """
        Shannon entropy (bits) of the character distribution.

        Spaces and punctuation are ignored and position does not matter:
        "abab" and "aabb" score the same. Empty input scores 0.
        """
        counts = Counter(char for char in input_text if not is_separator(char))
        total = sum(counts.values())
        if total == 0:
            return 0.0

        entropy = 0.0
        for count in counts.values():
            probability = count / total
            entropy -= probability * math.log2(probability)
        return entropy
