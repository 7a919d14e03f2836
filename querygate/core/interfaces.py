from abc import ABC, abstractmethod
from typing import Optional

from querygate.core.context import RequestContext
from querygate.core.schemas import SkillResult


class Skill(ABC):
    """
    Contract every adapter (HTTP, protocol servers, direct callers) talks to.

    Query-level problems come back inside SkillResult.status; `execute` only
    raises once the skill has been shut down.
    """

    @abstractmethod
    def capability_id(self) -> str: ...

    @abstractmethod
    async def execute(
        self, input_text: str, ctx: Optional[RequestContext] = None
    ) -> SkillResult: ...

    @abstractmethod
    async def safe_shutdown(self) -> None: ...
