from typing import Literal

from pydantic import BaseModel


class ClientMessage(BaseModel):
    action: Literal["subscribe", "unsubscribe"]
    topic: str
