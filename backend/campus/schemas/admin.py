from typing import Literal

from campus.schemas.base import CamelModel


class UserStatusIn(CamelModel):
    status: Literal["active", "inactive"]
