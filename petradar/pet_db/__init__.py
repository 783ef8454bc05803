"""
Lost & Sighted Pets DB with Photo Matching
------------------------------------------
Public API:

    MatchingOrchestrator.handle_new_sighting(...)
    MatchingOrchestrator.handle_new_lost_report(...)
    PetStore
"""

from .models import (ReportStatus, SightingStatus, MatchStatus,
                     User, LostPetReport, SightingReport, PetImage, Match,
                     SightingFields, LostReportFields, ImageUpload,
                     transition, parse_status)

from .store import PetStore                                        # noqa: F401
from .core import MatchingOrchestrator, SightingResult, search_window  # noqa: F401
from .management import MatchService, ReportService                # noqa: F401
