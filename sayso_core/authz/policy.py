"""
Policy evaluation for Sayso Core.

This module decides whether an identity may perform an operation on a
resource:
- A declarative rule table keyed by (resource type, operation)
- Rules are predicates over the resolver's relations plus resource flags
- Every decision names the rule that produced it
- Denials are written to the audit log

Invariants:
    - Every mutation is authorized before it touches the store
    - Missing rule, missing resource or unreadable store all deny
    - Callers see only the generic "not permitted"; the rule and reason
      go to the audit log
    - Notification CREATE is denied to every request identity; only the
      notification fan-out writes notifications

How to change safely:
    - Add rules, do not edit predicates shared by several rules
    - A new resource type needs rules for all four operations, even if
      they are `nobody`
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import CoreError, UnauthorizedError
from .ownership import OwnershipRelation, OwnershipResolver
from .resources import Operation, Resource, ResourceType

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("sayso_core.authz.audit")

OWNER = OwnershipRelation.DIRECT_OWNER
TEAM = OwnershipRelation.TEAM_MEMBER
ADMIN = OwnershipRelation.ADMINISTRATOR


@dataclass(frozen=True)
class Decision:
    """Outcome of one authorization check.

    Attributes:
        allowed: Whether the operation may proceed
        rule: Name of the rule that was consulted
        reason: Why it was denied (None when allowed)
    """

    allowed: bool
    rule: str
    reason: str | None = None

    @classmethod
    def allow(cls, rule: str) -> Decision:
        return cls(allowed=True, rule=rule)

    @classmethod
    def deny(cls, rule: str, reason: str) -> Decision:
        return cls(allowed=False, rule=rule, reason=reason)


@dataclass(frozen=True)
class RuleContext:
    identity_id: str | None
    relations: frozenset[OwnershipRelation]
    resource: Resource


Predicate = Callable[[RuleContext], bool]


@dataclass(frozen=True)
class Rule:
    name: str
    check: Predicate


# ── Predicates ──────────────────────────────────────────────────────


def anyone(ctx: RuleContext) -> bool:
    return True


def nobody(ctx: RuleContext) -> bool:
    return False


def authenticated(ctx: RuleContext) -> bool:
    return ctx.identity_id is not None


def is_author(ctx: RuleContext) -> bool:
    return ctx.identity_id is not None and ctx.identity_id == ctx.resource.author_id


def guest_on_permitted_target(ctx: RuleContext) -> bool:
    return (
        ctx.identity_id is None
        and ctx.resource.author_id is None
        and ctx.resource.guest_allowed
    )


def visible(ctx: RuleContext) -> bool:
    return not ctx.resource.restricted or ADMIN in ctx.relations


def holds(*relations: OwnershipRelation) -> Predicate:
    wanted = frozenset(relations)

    def check(ctx: RuleContext) -> bool:
        return bool(ctx.relations & wanted)

    return check


def either(*predicates: Predicate) -> Predicate:
    def check(ctx: RuleContext) -> bool:
        return any(p(ctx) for p in predicates)

    return check


def both(*predicates: Predicate) -> Predicate:
    def check(ctx: RuleContext) -> bool:
        return all(p(ctx) for p in predicates)

    return check


def _rules(
    resource_type: ResourceType,
    create: Predicate,
    read: Predicate,
    update: Predicate,
    delete: Predicate,
) -> dict[tuple[ResourceType, Operation], Rule]:
    prefix = resource_type.value
    return {
        (resource_type, Operation.CREATE): Rule(f"{prefix}.create", create),
        (resource_type, Operation.READ): Rule(f"{prefix}.read", read),
        (resource_type, Operation.UPDATE): Rule(f"{prefix}.update", update),
        (resource_type, Operation.DELETE): Rule(f"{prefix}.delete", delete),
    }


RULES: dict[tuple[ResourceType, Operation], Rule] = {
    **_rules(
        ResourceType.BUSINESS,
        create=authenticated,
        read=visible,
        update=holds(OWNER, TEAM, ADMIN),
        delete=holds(OWNER, ADMIN),
    ),
    **_rules(
        ResourceType.EVENT,
        create=authenticated,
        read=visible,
        update=holds(OWNER, ADMIN),
        delete=holds(OWNER, ADMIN),
    ),
    **_rules(
        ResourceType.REVIEW,
        create=either(is_author, guest_on_permitted_target),
        read=anyone,
        update=is_author,
        delete=is_author,
    ),
    **_rules(
        ResourceType.REPLY,
        create=both(authenticated, is_author),
        read=anyone,
        update=is_author,
        delete=is_author,
    ),
    **_rules(
        ResourceType.IMAGE,
        create=holds(OWNER, TEAM, ADMIN),
        read=anyone,
        update=holds(OWNER, TEAM, ADMIN),
        delete=holds(OWNER, TEAM, ADMIN),
    ),
    **_rules(
        ResourceType.VOTE,
        create=both(authenticated, is_author),
        read=anyone,
        update=nobody,
        delete=is_author,
    ),
    **_rules(
        ResourceType.TEAM_MEMBER,
        create=holds(OWNER, ADMIN),
        read=holds(OWNER, TEAM, ADMIN),
        update=holds(OWNER, ADMIN),
        delete=either(holds(OWNER, ADMIN), is_author),
    ),
    **_rules(
        ResourceType.NOTIFICATION,
        create=nobody,
        read=is_author,
        update=is_author,
        delete=is_author,
    ),
    **_rules(
        ResourceType.PROFILE_VIEW,
        create=visible,
        read=holds(OWNER, TEAM, ADMIN),
        update=holds(ADMIN),
        delete=holds(ADMIN),
    ),
    **_rules(
        ResourceType.CTA_CLICK,
        create=visible,
        read=holds(OWNER, TEAM, ADMIN),
        update=holds(ADMIN),
        delete=holds(ADMIN),
    ),
    **_rules(
        ResourceType.BADGE,
        create=holds(ADMIN),
        read=anyone,
        update=holds(ADMIN),
        delete=holds(ADMIN),
    ),
    **_rules(
        ResourceType.IDENTITY,
        create=nobody,
        read=either(is_author, holds(ADMIN)),
        update=holds(ADMIN),
        delete=either(is_author, holds(ADMIN)),
    ),
}


class PolicyEvaluator:
    """Evaluates the rule table for one request at a time.

    Thread safety:
        Stateless apart from the resolver; safe to share.

    Example:
        >>> policy = PolicyEvaluator(OwnershipResolver(store))
        >>> decision = await policy.authorize("user-1", business, Operation.UPDATE)
        >>> decision.allowed, decision.rule
        (True, 'business.update')
    """

    def __init__(
        self,
        resolver: OwnershipResolver,
        rules: dict[tuple[ResourceType, Operation], Rule] | None = None,
    ) -> None:
        self.resolver = resolver
        self.rules = rules if rules is not None else RULES

    async def authorize(
        self,
        identity_id: str | None,
        resource: Resource | None,
        operation: Operation,
    ) -> Decision:
        """Decide whether identity_id may perform operation on resource.

        Args:
            identity_id: Requesting identity, None for a guest
            resource: Target resource, None if it does not exist
            operation: Requested operation

        Returns:
            Allow or Deny, with the consulted rule
        """
        if resource is None:
            decision = Decision.deny("resource.exists", "resource not found")
            self._audit(identity_id, resource, operation, decision)
            return decision

        rule = self.rules.get((resource.type, operation))
        if rule is None:
            decision = Decision.deny(
                f"{resource.type.value}.{operation.value}", "no rule for operation"
            )
            self._audit(identity_id, resource, operation, decision)
            return decision

        try:
            relations = await self.resolver.resolve(identity_id, resource)
        except (CoreError, sqlite3.Error) as e:
            logger.error(
                "Ownership resolution failed, denying",
                extra={"rule": rule.name, "error": str(e)},
            )
            decision = Decision.deny(rule.name, "store unavailable")
            self._audit(identity_id, resource, operation, decision)
            return decision

        ctx = RuleContext(identity_id=identity_id, relations=relations, resource=resource)
        if rule.check(ctx):
            return Decision.allow(rule.name)

        decision = Decision.deny(rule.name, "no qualifying relation")
        self._audit(identity_id, resource, operation, decision)
        return decision

    async def authorize_or_raise(
        self,
        identity_id: str | None,
        resource: Resource | None,
        operation: Operation,
    ) -> Decision:
        """Authorize and raise if denied.

        Raises:
            UnauthorizedError: If the decision is a denial
        """
        decision = await self.authorize(identity_id, resource, operation)
        if not decision.allowed:
            raise UnauthorizedError(rule=decision.rule)
        return decision

    async def owns_storage_path(self, identity_id: str | None, object_name: str) -> bool:
        """Check an object-storage path against business ownership.

        The first path segment names a business. The identity must be its
        owner, on its team, or an administrator.

        Args:
            identity_id: Requesting identity
            object_name: Object path such as "<business_id>/gallery/photo.jpg"
        """
        segment = object_name.strip("/").split("/", 1)[0]
        if not segment or identity_id is None:
            return False

        try:
            business = await self.resolver.store.load_resource(ResourceType.BUSINESS, segment)
        except (CoreError, sqlite3.Error) as e:
            logger.error("Storage path check failed, denying", extra={"error": str(e)})
            return False
        if business is None:
            return False

        target = Resource(
            type=ResourceType.IMAGE,
            owner_id=business.owner_id,
            business_id=business.business_id,
        )
        decision = await self.authorize(identity_id, target, Operation.CREATE)
        return decision.allowed

    def _audit(
        self,
        identity_id: str | None,
        resource: Resource | None,
        operation: Operation,
        decision: Decision,
    ) -> None:
        audit_logger.info(
            "Authorization denied",
            extra={
                "identity_id": identity_id,
                "resource_type": resource.type.value if resource else None,
                "resource_id": resource.id if resource else None,
                "operation": operation.value,
                "rule": decision.rule,
                "reason": decision.reason,
            },
        )
