"""
Authorization for Sayso Core: ownership resolution and policy evaluation.
"""

from .ownership import OwnershipRelation, OwnershipResolver
from .policy import RULES, Decision, PolicyEvaluator
from .resources import GUEST_REVIEW_TARGETS, Operation, Resource, ResourceType

__all__ = [
    "Decision",
    "GUEST_REVIEW_TARGETS",
    "Operation",
    "OwnershipRelation",
    "OwnershipResolver",
    "PolicyEvaluator",
    "RULES",
    "Resource",
    "ResourceType",
]
