from app.domain.models.post import Post
from app.domain.models.post_variant import PostVariant
from app.domain.models.publication_metrics import PublicationMetrics
from app.domain.models.schedule import Schedule
from app.domain.models.social_account import SocialAccount

__all__ = [
    "Post",
    "PostVariant",
    "PublicationMetrics",
    "Schedule",
    "SocialAccount",
]
