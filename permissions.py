"""
permissions.py — principal + settings -> capability set.

Pure: no I/O, no caching. Callers pass settings read for the current request,
so an admin toggling read-only or guest mode takes effect on the next request.
"""

from dataclasses import dataclass

from auth import Principal
from config import GUEST_READ, GUEST_UPLOAD


@dataclass(frozen=True)
class Permissions:
    browse: bool = False
    upload: bool = False
    delete: bool = False
    rename: bool = False
    share: bool = False
    admin: bool = False
    read_only: bool = False

    def to_dict(self) -> dict:
        return {
            "canBrowse": self.browse,
            "canUpload": self.upload,
            "canDelete": self.delete,
            "canRename": self.rename,
            "canShare": self.share,
            "isAdmin": self.admin,
            "readOnly": self.read_only,
        }


def resolve_permissions(principal: Principal, settings, auth_enabled: bool = True) -> Permissions:
    read_only = bool(settings.read_only)
    writable = not read_only

    if not auth_enabled:
        return Permissions(
            browse=True, upload=writable, delete=writable, rename=writable,
            share=True, admin=True, read_only=read_only,
        )

    if principal.anonymous:
        if settings.guest_mode == GUEST_UPLOAD:
            return Permissions(browse=True, upload=writable, read_only=read_only)
        if settings.guest_mode == GUEST_READ:
            return Permissions(browse=True, read_only=read_only)
        return Permissions(read_only=read_only)

    if principal.is_admin:
        return Permissions(
            browse=True, upload=writable, delete=writable, rename=writable,
            share=True, admin=True, read_only=read_only,
        )

    return Permissions(
        browse=True,
        upload=writable,
        delete=writable and bool(settings.allow_delete),
        rename=writable and bool(settings.allow_rename),
        share=True,
        read_only=read_only,
    )
