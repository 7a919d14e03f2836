from querygate.core.config import Settings, parse_duration
from querygate.core.context import RequestContext

DEFAULT_TOTAL_TIMEOUT = 10.0


class ExecutionController:
    """Execution budget: total timeout, resource estimates and isolation level."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.total_timeout = parse_duration(
            settings.execution.timeout.total, DEFAULT_TOTAL_TIMEOUT
        )

    @property
    def isolation_level(self) -> str:
        return self.settings.execution.isolation_level

    def get_execution_context(self, parent: RequestContext) -> RequestContext:
        return parent.with_timeout(
            self.total_timeout, cause=f"execution timeout after {self.total_timeout:g}s"
        )

    def check_resource_limits(
        self, input_size: int, estimated_rows: int, estimated_memory_mb: float
    ) -> bool:
        limits = self.settings.security.resource_limits
        return (
            input_size <= limits.max_input_bytes
            and estimated_rows <= limits.max_rows
            and estimated_memory_mb <= limits.max_memory_mb
        )
