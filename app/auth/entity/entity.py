from enum import Enum
from typing import Optional

from pydantic import BaseModel


class UserTier(str, Enum):
    GUEST = "guest"
    REGULAR = "regular"


class Principal(BaseModel):
    """The authenticated caller of a request."""
    id: str
    email: Optional[str] = None
    tier: UserTier = UserTier.REGULAR
