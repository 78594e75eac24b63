"""
multirpc - API Request/Response Models

Pydantic models for the management API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.models import RequestOptions


class RpcCallRequest(BaseModel):
    """Body of POST /v1/rpc."""
    method: str = Field(..., min_length=1, max_length=128)
    params: List[Any] = Field(default_factory=list)
    preferred_provider: Optional[str] = None
    required_specialty: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0, le=120)
    use_cache: Optional[bool] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        if not v.strip():
            raise ValueError("method cannot be blank")
        return v.strip()

    def to_options(self) -> RequestOptions:
        return RequestOptions(
            preferred_provider=self.preferred_provider,
            required_specialty=self.required_specialty,
            timeout=self.timeout,
            use_cache=self.use_cache,
            max_retries=self.max_retries,
        )


class MarkUnhealthyRequest(BaseModel):
    """Body of POST /v1/providers/{name}/mark-unhealthy."""
    reason: str = Field(default="marked unhealthy by operator", max_length=512)


class HealthResponse(BaseModel):
    status: str
    version: str
    running: bool
    healthy_providers: int
    total_providers: int
    primary_provider: Optional[str] = None


class ProviderListResponse(BaseModel):
    object: str = "list"
    data: Dict[str, Dict[str, Any]]
