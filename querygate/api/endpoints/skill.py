import base64
import json
import time
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status

from querygate.core import schemas
from querygate.core.config import Settings, get_settings
from querygate.core.context import RequestContext
from querygate.core.exceptions import SkillClosedError
from querygate.core.interfaces import Skill
from querygate.core.security import verify_token

router = APIRouter(prefix="/skill", tags=["Skill"], dependencies=[Depends(verify_token)])

INLINE_RESULT_LIMIT = 1024


# The skill is built once in the app lifespan and shared by every request
def get_skill(request: Request) -> Skill:
    return request.app.state.skill


skill_dep = Annotated[Skill, Depends(get_skill)]
settings_dep = Annotated[Settings, Depends(get_settings)]


def split_meta(meta: bytes) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """JSON metadata for successes, plain text reason/cause for everything else."""
    if not meta:
        return None, None
    text = meta.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except ValueError:
        return None, text
    if isinstance(parsed, dict):
        return parsed, None
    return None, text


@router.post("/execute", response_model=schemas.ExecuteResponse)
async def execute_query(payload: schemas.ExecuteRequest, skill: skill_dep):
    """
    Run one input through the guarded pipeline.
    Rejections and execution errors come back as 200 with their status.
    """
    started = time.monotonic()
    try:
        result = await skill.execute(
            payload.query, RequestContext.from_timeout(payload.timeout_seconds)
        )
    except SkillClosedError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))

    metadata, detail = split_meta(result.meta)
    inline = None
    if result.result and len(result.result) < INLINE_RESULT_LIMIT:
        inline = base64.b64encode(result.result).decode("ascii")

    return schemas.ExecuteResponse(
        query_id=result.query_id,
        status=result.status,
        timestamp=result.timestamp,
        duration_ms=int((time.monotonic() - started) * 1000),
        result_size=len(result.result),
        metadata=metadata,
        detail=detail,
        result=inline,
    )


@router.get("/capabilities")
async def capabilities(skill: skill_dep, settings: settings_dep):
    """What this skill is and how it is locked down."""
    return {
        "skill_id": skill.capability_id(),
        "security": {
            "mode": settings.security.mode,
            "allowed_operations": settings.security.allowed_operations,
            "forbidden_keywords_count": len(settings.security.forbidden_keywords),
        },
        "authentication": {
            "enabled": settings.authentication.enabled,
            "header_name": settings.authentication.header_name,
        },
        "performance": {
            "cache_enabled": settings.cache.enabled,
            "async_processing": settings.performance.async_processing,
            "compression_enabled": settings.performance.compression.enabled,
        },
    }


@router.get("/config")
async def config_info(settings: settings_dep):
    """Non-secret view of the active configuration."""
    limits = settings.security.resource_limits
    return {
        "app": {
            "name": settings.app.name,
            "version": settings.app.version,
            "environment": settings.app.environment,
        },
        "security": {
            "mode": settings.security.mode,
            "max_input_bytes": limits.max_input_bytes,
            "max_rows": limits.max_rows,
            "max_memory_mb": limits.max_memory_mb,
        },
        "execution": {
            "isolation_level": settings.execution.isolation_level,
            "timeout": settings.execution.timeout.total,
        },
        "performance": {
            "cache_enabled": settings.cache.enabled,
            "cache_size": settings.cache.size,
            "cache_ttl": settings.cache.ttl,
            "async_processing": settings.performance.async_processing,
            "compression_enabled": settings.performance.compression.enabled,
        },
    }


@router.get("/health")
async def health(skill: skill_dep, settings: settings_dep):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "skill": skill.capability_id(),
        "version": settings.app.version,
    }
