"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
from .feed_post import FeedPost
from .trained_model import TrainedModel
from .reference_image import ReferenceImage
