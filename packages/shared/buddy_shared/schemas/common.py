from typing import Optional
from pydantic import BaseModel

# Every body carries ``success`` and, for errors, a top-level ``message``;
# the browser extension checks ``json.success`` and shows ``json.message``.

class ErrorDetail(BaseModel):
    code: str
    message: str
    status: int

class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error: ErrorDetail

class MessageResponse(BaseModel):
    success: bool = True
    message: str
    detail: Optional[str] = None
