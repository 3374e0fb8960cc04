from .gate import ReviewGate, ReviewOutcome
from .review import CertificateReviewResult, review_certificate
from .server import CertificateReviewServer, create_review_app
from .viewer import open_viewer

__all__ = [
    "CertificateReviewResult",
    "CertificateReviewServer",
    "ReviewGate",
    "ReviewOutcome",
    "create_review_app",
    "open_viewer",
    "review_certificate",
]
