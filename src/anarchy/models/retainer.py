"""Retainer agreements between a client and the firm.

A retainer starts ``pending`` when a lawyer offers it, becomes ``signed`` when
the client signs with their Roblox username, or ``cancelled`` if withdrawn
before signing. A signed retainer is what the firm calls "active".
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

RetainerStatus = Literal["pending", "signed", "cancelled"]

RETAINER_STATUSES: tuple[str, ...] = ("pending", "signed", "cancelled")

STANDARD_RETAINER_TEMPLATE = """\
RETAINER AGREEMENT - ANARCHY & ASSOCIATES

This agreement is made between [CLIENT_NAME] ("the Client") and Anarchy & \
Associates ("the Firm"), represented by [LAWYER_NAME].

1. SCOPE OF REPRESENTATION
The Firm agrees to provide legal representation to the Client in matters \
brought before it, subject to the Firm's acceptance of each case.

2. RESPONSIBILITIES OF THE CLIENT
The Client agrees to provide truthful and complete information, respond to \
the Firm's requests in a timely manner, and follow the server's rules.

3. CONFIDENTIALITY
Communications between the Client and the Firm are confidential and will not \
be disclosed without the Client's consent, except where the server's rules \
require it.

4. TERMINATION
Either party may end this agreement at any time with notice. Work already \
performed remains covered by these terms.

By signing below, the Client confirms they have read and accept these terms.

Client Signature: [SIGNATURE]
Date: [DATE]
Representing Lawyer: [LAWYER_NAME]
"""


class Retainer(BaseModel):
    id: str
    guild_id: str
    client_id: str
    lawyer_id: str
    status: RetainerStatus = "pending"
    agreement_template: str = STANDARD_RETAINER_TEMPLATE
    client_roblox_username: str | None = None
    digital_signature: str | None = None
    signed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status == "signed"


class RetainerStats(BaseModel):
    total: int = 0
    active: int = 0
    pending: int = 0
    cancelled: int = 0


class FormattedRetainerAgreement(BaseModel):
    client_name: str
    client_roblox_username: str
    lawyer_name: str
    signed_at: datetime
    agreement_text: str
