# Studio API Services Package
from studio_api.services.schedule_service import ScheduleService
from studio_api.services.registration_service import RegistrationService
from studio_api.services.checkin_service import CheckinService
from studio_api.services.overlap_service import OverlapService
from studio_api.services.ledger_service import LedgerService

__all__ = [
    "ScheduleService",
    "RegistrationService",
    "CheckinService",
    "OverlapService",
    "LedgerService",
]
