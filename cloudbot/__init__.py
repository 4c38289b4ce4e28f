"""
Core modules for the cloud storage bot: cache, scores, referrals, rewards, broadcast
"""

from .cache import MemoryCache
from .scoring import ScoreAggregator, ScoreSnapshot
from .referral import generate_referral_code, register_user, process_referral
from .rewards import RewardDistributor, RewardAssignment, RewardRejected
from .write_queue import WriteQueue
from .storage_mongodb import MongoStorage

__all__ = [
    'MemoryCache',
    'ScoreAggregator',
    'ScoreSnapshot',
    'generate_referral_code',
    'register_user',
    'process_referral',
    'RewardDistributor',
    'RewardAssignment',
    'RewardRejected',
    'WriteQueue',
    'MongoStorage',
]
