"""Readers (members) and the identifier used to pick one as a borrower.

A borrower is named by exactly one of two keys: the generated member ID or
the national identity code (NIC). ``MemberIdentifier`` is a tagged union of
``ByMemberId`` and ``ByNic`` so callers never pass two optional strings
around with an implicit precedence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from errors import ValidationError


@dataclass(frozen=True)
class ByMemberId:
    member_id: str

    @property
    def column(self) -> str:
        return "member_id"

    @property
    def value(self) -> str:
        return self.member_id

    def __str__(self) -> str:
        return f"member ID {self.member_id}"


@dataclass(frozen=True)
class ByNic:
    nic: str

    @property
    def column(self) -> str:
        return "nic"

    @property
    def value(self) -> str:
        return self.nic

    def __str__(self) -> str:
        return f"NIC {self.nic}"


MemberIdentifier = Union[ByMemberId, ByNic]


def identifier_from(member_id: Optional[str] = None, nic: Optional[str] = None) -> MemberIdentifier:
    """Build the identifier variant from the two optional request fields.

    Both fields are trimmed. When both are present the member ID wins; when
    neither is present the request is invalid.
    """
    member_id = (member_id or "").strip()
    nic = (nic or "").strip()
    if member_id:
        return ByMemberId(member_id.upper())
    if nic:
        return ByNic(nic.upper())
    raise ValidationError("Provide either a member ID or a NIC.")


class Member:
    """A library reader who can borrow books."""

    def __init__(self, full_name: str, nic: str, email: str, phone: str | None = None,
                 address: str | None = None, date_of_birth: str | None = None,
                 member_id: str | None = None, id: int | None = None,
                 is_active: bool = True, created_at: str | None = None,
                 updated_at: str | None = None) -> None:
        self.id = id
        self.member_id = member_id
        self.full_name = full_name.strip()
        self.nic = nic.strip().upper()
        self.email = email.strip().lower()
        self.phone = phone
        self.address = address
        self.date_of_birth = date_of_birth
        self.is_active = bool(is_active)
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:
        return f"{self.full_name} ({self.member_id})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "full_name": self.full_name,
            "nic": self.nic,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "date_of_birth": self.date_of_birth,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def summary(self) -> dict:
        """Fields embedded in a lending record."""
        return {
            "id": self.id,
            "full_name": self.full_name,
            "member_id": self.member_id,
            "nic": self.nic,
            "email": self.email,
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        return Member(
            id=data.get("id"),
            member_id=data.get("member_id"),
            full_name=data["full_name"],
            nic=data["nic"],
            email=data["email"],
            phone=data.get("phone"),
            address=data.get("address"),
            date_of_birth=data.get("date_of_birth"),
            is_active=bool(data.get("is_active", True)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
