"""Doctor/patient contact authorization."""

from __future__ import annotations

import structlog
from prometheus_client import Counter

from clinicops.collaborators import AppointmentLog, UserDirectory
from clinicops.errors import PermissionDeniedError


logger = structlog.get_logger(__name__)

CONTACT_DENIALS_TOTAL = Counter(
    "clinicops_contact_denials_total",
    "Doctor actions refused because the pair share no appointment history",
)


class PermissionGate:
    """Decide whether a doctor may message or inspect a patient.

    A doctor may contact a patient only if the two share at least one
    appointment record, whatever its status.
    """

    def __init__(self, users: UserDirectory, appointments: AppointmentLog) -> None:
        self._users = users
        self._appointments = appointments

    def can_contact(self, doctor_id: int, patient_id: int) -> bool:
        if self._users.lookup(doctor_id) is None or self._users.lookup(patient_id) is None:
            logger.debug("contact_check_unknown_user", doctor_id=doctor_id, patient_id=patient_id)
            return False
        shared = self._appointments.find_shared(doctor_id, patient_id)
        logger.debug(
            "contact_check",
            doctor_id=doctor_id,
            patient_id=patient_id,
            shared_appointments=len(shared),
        )
        return bool(shared)

    def require_contact(self, doctor_id: int, patient_id: int) -> None:
        """Raise :class:`PermissionDeniedError` unless :meth:`can_contact` holds."""

        if not self.can_contact(doctor_id, patient_id):
            CONTACT_DENIALS_TOTAL.inc()
            logger.warning("contact_denied", doctor_id=doctor_id, patient_id=patient_id)
            raise PermissionDeniedError(
                "Doctor has no appointment history with this patient",
                doctor_id=doctor_id,
                patient_id=patient_id,
            )


__all__ = ["PermissionGate", "CONTACT_DENIALS_TOTAL"]
