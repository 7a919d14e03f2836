# querygate/core/guard/pipeline.py
"""
GUARD PIPELINE - The single authorization decision point

Stages run strictly in order and stop at the first failure:

    L1 semantic safety → L2 operation permission → L3 keyword filter
        → L4 resource control → L5 execution safety → allowed

The rejection reason always starts with the stage label ("L3: ...") so that
callers and auditors can tell which check declined the input.
"""

import logging
from enum import IntEnum
from typing import NamedTuple, Optional

from querygate.core.config import Settings
from querygate.core.context import RequestContext
from querygate.core.guard.execution import ExecutionController
from querygate.core.guard.permission import PermissionController

logger = logging.getLogger(__name__)


class GuardLevel(IntEnum):
    SEMANTIC_SAFETY = 1
    OPERATION_PERMISSION = 2
    KEYWORD_FILTER = 3
    RESOURCE_CONTROL = 4
    EXECUTION_SAFETY = 5

    @property
    def label(self) -> str:
        return f"L{self.value}"


class GuardDecision(NamedTuple):
    allowed: bool
    reason: str = ""


class GuardSystem:
    def __init__(
        self,
        settings: Settings,
        permission_ctrl: PermissionController,
        execution_ctrl: ExecutionController,
    ):
        self.settings = settings
        self.permission_ctrl = permission_ctrl
        self.execution_ctrl = execution_ctrl

    def check_all_guards(
        self, ctx: Optional[RequestContext], input_text: str
    ) -> GuardDecision:
        ctx = ctx or RequestContext.background()

        # L1: Semantic Safety
        if not self.permission_ctrl.check_semantic_safety(input_text):
            return self._reject(
                GuardLevel.SEMANTIC_SAFETY,
                "semantic safety violation - entropy out of configured range",
            )

        # L2: Operation Permission
        operation = self.detect_operation_type(input_text)
        if not self.permission_ctrl.check_operation_permission(operation):
            return self._reject(
                GuardLevel.OPERATION_PERMISSION,
                "operation not allowed in current execution mode",
            )

        # L3: Keyword Filter
        keyword = self.permission_ctrl.check_forbidden_keywords(input_text)
        if keyword is not None:
            return self._reject(
                GuardLevel.KEYWORD_FILTER, f"forbidden keyword detected: {keyword}"
            )

        # L4: Resource Control
        if not self.check_resource_limits(input_text):
            return self._reject(GuardLevel.RESOURCE_CONTROL, "resource limits exceeded")

        # L5: Execution Safety
        if not self.check_execution_safety(ctx):
            return self._reject(GuardLevel.EXECUTION_SAFETY, "context deadline exceeded")

        return GuardDecision(True, "")

    def detect_operation_type(self, input_text: str) -> str:
        """First allowed operation mentioned in the input, SELECT otherwise."""
        lowered = input_text.lower()
        for operation in self.settings.security.allowed_operations:
            if operation.lower() in lowered:
                return operation
        return "SELECT"

    def check_resource_limits(self, input_text: str) -> bool:
        input_size = len(input_text.encode("utf-8"))
        estimated_rows = input_size // 100
        estimated_memory_mb = input_size / (1024 * 1024)
        return self.execution_ctrl.check_resource_limits(
            input_size, estimated_rows, estimated_memory_mb
        )

    def check_execution_safety(self, ctx: RequestContext) -> bool:
        # Need at least half of the total budget left to even start
        remaining = ctx.remaining()
        if remaining is None:
            return True
        return remaining >= self.execution_ctrl.total_timeout / 2

    @staticmethod
    def _reject(level: GuardLevel, cause: str) -> GuardDecision:
        reason = f"{level.label}: {cause}"
        logger.info("Guard rejected input at %s: %s", level.label, cause)
        return GuardDecision(False, reason)
