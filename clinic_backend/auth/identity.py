from dataclasses import dataclass

from clinic_backend.models.appointment import CancelActor

ADMIN_ROLE = 'admin'
PATIENT_ROLE = 'patient'


@dataclass(frozen=True)
class Identity:
    """A verified caller, as vouched for by the identity provider."""
    email: str
    role: str = PATIENT_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @property
    def actor(self) -> CancelActor:
        # The admin panel is operated by the doctor.
        return CancelActor.DOCTOR if self.is_admin else CancelActor.PATIENT
