from dataclasses import dataclass

ATTENDEE = "attendee"
ORGANIZER = "organizer"
ADMIN = "admin"

ROLES = frozenset({ATTENDEE, ORGANIZER, ADMIN})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as supplied by the upstream auth layer."""

    id: str
    role: str

    def is_admin(self) -> bool:
        return self.role == ADMIN

    def is_organizer(self) -> bool:
        return self.role in {ORGANIZER, ADMIN}

    def can_manage_event(self, organizer_id: str) -> bool:
        return self.is_admin() or (self.role == ORGANIZER and self.id == organizer_id)
