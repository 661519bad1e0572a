from pydantic import BaseModel, Field
from typing import Optional


class PathRequest(BaseModel):
    path: str = ""


class RenameRequest(BaseModel):
    path: str
    new_name: str = Field(alias="newName")

    model_config = {"populate_by_name": True}


class ShareCreateRequest(BaseModel):
    path: str = ""
    expiry: Optional[str] = None
    mode: Optional[str] = "browse"


class TokenRequest(BaseModel):
    token: str


class UserCreateRequest(BaseModel):
    username: str
    password: str
    role: str = "user"


class PasswordResetRequest(BaseModel):
    username: str
    password: str


class DisableUserRequest(BaseModel):
    username: str
    disabled: bool = True


class UsernameRequest(BaseModel):
    username: str


class ChangeRoleRequest(BaseModel):
    username: str
    role: str  # "admin" | "user"


class SettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""
    guest_mode: Optional[str] = None
    max_upload_size_mb: Optional[int] = None
    upload_allow_regex: Optional[str] = None
    upload_deny_regex: Optional[str] = None
    upload_subdir: Optional[str] = None
    collision_policy: Optional[str] = None
    default_share_expiry: Optional[str] = None
    allow_delete: Optional[bool] = None
    allow_rename: Optional[bool] = None
    read_only: Optional[bool] = None
    virus_scan_command: Optional[str] = None
