from typing import List, Optional

from database import Repository, encode_document
from errors import InvalidTransition, NotFoundError
from schemas import SupportTicket, SupportTicketCreate, TicketStatus, now_utc

# Statuses only move forward; skipping ahead (open -> resolved) is allowed.
STATUS_ORDER = {"open": 0, "in_progress": 1, "resolved": 2}


class SupportTicketRepository(Repository):
    collection_key = "support_ticket"
    model = SupportTicket

    def create(self, creator_id: str, request: SupportTicketCreate) -> str:
        return self._insert({**request.model_dump(), "status": "open", "user_id": creator_id})

    def get_by_id(self, ticket_id: str) -> Optional[SupportTicket]:
        return self._get(ticket_id)

    def require(self, ticket_id: str) -> SupportTicket:
        ticket = self._get(ticket_id)
        if ticket is None:
            raise NotFoundError("Support ticket not found")
        return ticket

    def update(self, ticket: SupportTicket) -> SupportTicket:
        current = self.require(ticket.id)
        if ticket.status != current.status:
            if current.status == "resolved":
                raise InvalidTransition("Resolved tickets cannot change status")
            if STATUS_ORDER[ticket.status] < STATUS_ORDER[current.status]:
                raise InvalidTransition(f"Cannot move a ticket from {current.status} back to {ticket.status}")

        updated = ticket.model_copy(update={
            "user_id": current.user_id,
            "created_at": current.created_at,
            "updated_at": now_utc(),
        })
        res = self.collection.replace_one(
            {"_id": self._key(ticket.id), "status": current.status},
            encode_document(updated),
        )
        if res.matched_count == 0:
            raise InvalidTransition("Ticket was changed by someone else, reload and retry")
        return updated

    def list(self, status: Optional[TicketStatus] = None) -> List[SupportTicket]:
        return self._find({"status": status} if status else {})
