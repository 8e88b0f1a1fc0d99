from app.clients.api import clients_router, intake_router, submissions_router
from app.clients.conversion import ConversionEngine, ConversionResult
from app.clients.deconversion import DELETION_STAGES, AccountStatusResult, DeconversionEngine, DeletionReport
from app.clients.errors import (
    AlreadyConverted,
    AlreadyInState,
    ConfirmationRequired,
    ExternalServiceUnavailable,
    LifecycleError,
    NotFound,
    PartialFailure,
    ValidationError,
)
from app.clients.lifecycle import LifecycleController, ProfileMatch, StatusChangeOutcome, find_live_profile
from app.clients.models import (
    ClientNote,
    ClientProfile,
    ContactSubmission,
    Dog,
    Message,
    MessageReadReceipt,
    Payment,
    Referral,
    SignupInvitation,
    TrainingSession,
    UserAccount,
)
from app.clients.service import ActorUser, ClientDirectoryService, SubmissionService

__all__ = [
    "intake_router",
    "submissions_router",
    "clients_router",
    "ContactSubmission",
    "UserAccount",
    "ClientProfile",
    "Dog",
    "TrainingSession",
    "Message",
    "MessageReadReceipt",
    "ClientNote",
    "Referral",
    "Payment",
    "SignupInvitation",
    "LifecycleError",
    "ValidationError",
    "NotFound",
    "AlreadyInState",
    "AlreadyConverted",
    "ConfirmationRequired",
    "PartialFailure",
    "ExternalServiceUnavailable",
    "ActorUser",
    "SubmissionService",
    "ClientDirectoryService",
    "ConversionEngine",
    "ConversionResult",
    "DeconversionEngine",
    "DeletionReport",
    "AccountStatusResult",
    "DELETION_STAGES",
    "LifecycleController",
    "StatusChangeOutcome",
    "ProfileMatch",
    "find_live_profile",
]
