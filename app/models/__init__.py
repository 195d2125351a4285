from app.models.completed_enrollment import CompletedEnrollment
from app.models.user_profile import UserProfile

__all__ = [
    "UserProfile",
    "CompletedEnrollment",
]
