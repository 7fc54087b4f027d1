"""User-visible notices: the gateway's counterpart of a UI toast."""
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel

from rider_gateway.errors import GatewayError


class Notice(BaseModel):
    title: str
    description: Optional[str] = None
    variant: Literal["default", "destructive"] = "default"

    @classmethod
    def from_error(cls, exc: GatewayError) -> "Notice":
        return cls(title=exc.title, description=exc.detail, variant="destructive")


NoticeSink = Callable[[Notice], Awaitable[Any]]
