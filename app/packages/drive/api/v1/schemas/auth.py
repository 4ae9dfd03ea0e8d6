"""认证相关的请求与响应模型。"""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class RegisterRequest(BaseModel):
    """注册即创建公司，注册人成为公司所有者与管理员。"""

    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)
    company_name: str = Field(..., min_length=2, max_length=100, alias="companyName")
    email: Optional[str] = Field(default=None, max_length=255)

    model_config = {"populate_by_name": True}


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)


class UserInfo(BaseModel):
    user_id: int
    username: str
    email: Optional[str] = None
    role: str
    company_id: Optional[int] = None
    storage_allocated: int
    storage_used: int
    allocated_to_users: int


class RegisterResponseData(UserInfo):
    company: dict


class TokenResponseData(BaseModel):
    access_token: str
    token_type: Literal["bearer"]
    user: UserInfo


RegisterResponse = ResponseEnvelope[RegisterResponseData]
TokenResponse = ResponseEnvelope[TokenResponseData]
LogoutResponse = ResponseEnvelope[None]
