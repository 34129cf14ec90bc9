"""
Identity Merger Module
======================

Repairs placeholder performer identities after ingestion.

Process:
1. Detect - scan linked performers whose names look like placeholders
2. Resolve - find the true identity via the reference index, falling
   back to another source's record for the same business code
3. Merge - relink products, keep the placeholder as an alias, migrate
   its aliases and delete it, all inside one savepoint

Borderline names are reported for review and never merged. Ambiguous or
missing answers leave the placeholder untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listing_hub.core.enums import PlaceholderVerdict
from listing_hub.db.models import (
    PerformerAliasDB,
    PerformerDB,
    ProductDB,
    ProductPerformerDB,
)
from listing_hub.db.repositories import ProductRepository
from listing_hub.identity.codes import extract_business_codes
from listing_hub.identity.placeholder import PlaceholderPolicy
from listing_hub.identity.reference import ReferenceIndex
from listing_hub.ingestion.linker import BatchRelationLinker, normalize_name

logger = logging.getLogger(__name__)

RESOLVED_BY_REFERENCE = "reference_index"
RESOLVED_BY_CROSS_SOURCE = "cross_source"


@dataclass
class PlaceholderCandidate:
    """A linked performer whose name looks like a placeholder."""

    performer_id: str
    name: str
    verdict: PlaceholderVerdict
    product_ids: list[str] = field(default_factory=list)


@dataclass
class Resolution:
    """The true identity found for a placeholder."""

    candidate: PlaceholderCandidate
    true_name: str
    method: str
    business_code: str | None = None


@dataclass
class MergeResult:
    """What a merge changed."""

    placeholder_id: str
    target_id: str
    true_name: str
    relinked: int = 0
    duplicate_links: int = 0
    alias_added: bool = False
    aliases_migrated: int = 0
    deleted: bool = False


@dataclass
class MergeReport:
    """Summary of a merge pass."""

    dry_run: bool = False
    scanned: int = 0
    resolved: int = 0
    merged: int = 0
    unresolved: int = 0
    flagged_for_review: list[str] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "dry_run": self.dry_run,
            "scanned": self.scanned,
            "resolved": self.resolved,
            "merged": self.merged,
            "unresolved": self.unresolved,
            "flagged_for_review": self.flagged_for_review,
            "actions": self.actions,
            "errors": self.errors,
        }


class IdentityMerger:
    """
    Detects, resolves and merges placeholder performers.

    Works on a caller-owned session; each merge runs in a savepoint and
    the caller commits.
    """

    def __init__(
        self,
        session: Session,
        policy: PlaceholderPolicy | None = None,
        reference_index: ReferenceIndex | None = None,
        probe_limit: int = 1,
    ) -> None:
        self.session = session
        self.policy = policy or PlaceholderPolicy()
        self.reference_index = reference_index or ReferenceIndex(session)
        self.probe_limit = max(1, probe_limit)
        self._products = ProductRepository(session)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect(self, limit: int | None = None, code: str | None = None) -> list[PlaceholderCandidate]:
        """
        Find placeholder and borderline performers that have product links.

        Args:
            limit: Maximum number of candidates to return
            code: Only consider performers linked to products with this business code

        Returns:
            Candidates ordered by name
        """
        has_links = exists().where(ProductPerformerDB.performer_id == PerformerDB.id)
        stmt = select(PerformerDB.id, PerformerDB.name).where(has_links).order_by(PerformerDB.name)
        if code:
            codes = extract_business_codes(code) or [code.strip().upper()]
            stmt = stmt.where(
                exists()
                .where(ProductPerformerDB.performer_id == PerformerDB.id)
                .where(ProductPerformerDB.product_id == ProductDB.id)
                .where(func.upper(ProductDB.business_code).in_(codes))
            )

        candidates: list[PlaceholderCandidate] = []
        for performer_id, name in self.session.execute(stmt).all():
            verdict = self.policy.classify(name)
            if verdict == PlaceholderVerdict.NONE:
                continue
            product_ids = list(
                self.session.execute(
                    select(ProductPerformerDB.product_id)
                    .where(ProductPerformerDB.performer_id == performer_id)
                    .order_by(ProductPerformerDB.created_at)
                ).scalars()
            )
            candidates.append(
                PlaceholderCandidate(
                    performer_id=performer_id,
                    name=name,
                    verdict=verdict,
                    product_ids=product_ids,
                )
            )
            if limit is not None and len(candidates) >= limit:
                break
        return candidates

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _usable_names(self, names: list[str], placeholder_name: str) -> list[str]:
        placeholder_name = normalize_name(placeholder_name)
        return [
            n
            for n in dict.fromkeys(normalize_name(n) for n in names)
            if n and n != placeholder_name and self.policy.classify(n) == PlaceholderVerdict.NONE
        ]

    def _cross_source_names(self, product: ProductDB, codes: list[str]) -> list[str]:
        """Performer names of other products sharing a business code."""
        others = [p for p in self._products.find_by_business_codes(codes) if p.id != product.id]
        if not others:
            return []
        stmt = (
            select(PerformerDB.name)
            .join(ProductPerformerDB, ProductPerformerDB.performer_id == PerformerDB.id)
            .where(ProductPerformerDB.product_id.in_([p.id for p in others]))
            .order_by(PerformerDB.name)
        )
        return list(self.session.execute(stmt).scalars())

    def resolve(self, candidate: PlaceholderCandidate) -> Resolution | None:
        """
        Find the true identity of a placeholder.

        Probes up to probe_limit linked products. An answer with more than
        one distinct name is ambiguous and counts as unresolved.

        Args:
            candidate: Detected placeholder

        Returns:
            Resolution, or None if unresolved
        """
        for product_id in candidate.product_ids[: self.probe_limit]:
            product = self._products.get_by_id(product_id)
            if product is None:
                continue
            codes = self.reference_index.codes_for_product(product)
            if not codes:
                continue

            for method, names in (
                (RESOLVED_BY_REFERENCE, self.reference_index.names_for_codes(codes)),
                (RESOLVED_BY_CROSS_SOURCE, self._cross_source_names(product, codes)),
            ):
                usable = self._usable_names(names, candidate.name)
                if len(usable) == 1:
                    return Resolution(
                        candidate=candidate,
                        true_name=usable[0],
                        method=method,
                        business_code=codes[0],
                    )
                if len(usable) > 1:
                    logger.info(
                        f"Ambiguous {method} answer for '{candidate.name}' "
                        f"({codes[0]}): {usable}"
                    )
                    return None
        return None

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(self, placeholder_id: str, true_name: str) -> MergeResult:
        """
        Merge a placeholder performer into the true identity.

        Steps, in one savepoint:
        1. relink every product of the placeholder, skipping duplicates
        2. record the placeholder name as an alias of the true identity
        3. move the placeholder's aliases to the true identity
        4. delete the placeholder once it has no product links

        Args:
            placeholder_id: Performer to merge away
            true_name: Name of the true identity (created if missing)

        Returns:
            MergeResult
        """
        placeholder = self.session.get(PerformerDB, placeholder_id)
        if placeholder is None:
            raise ValueError(f"Performer not found: {placeholder_id}")
        placeholder_name = placeholder.name

        with self.session.begin_nested():
            linker = BatchRelationLinker(self.session)
            true_name = normalize_name(true_name)
            target_id = linker.ensure_performers([true_name], source="merge")[true_name]
            if target_id == placeholder_id:
                raise ValueError(f"'{true_name}' resolves to the placeholder itself")

            result = MergeResult(placeholder_id=placeholder_id, target_id=target_id, true_name=true_name)

            product_ids = list(
                self.session.execute(
                    select(ProductPerformerDB.product_id).where(
                        ProductPerformerDB.performer_id == placeholder_id
                    )
                ).scalars()
            )
            already_linked = set(
                self.session.execute(
                    select(ProductPerformerDB.product_id).where(
                        ProductPerformerDB.performer_id == target_id,
                        ProductPerformerDB.product_id.in_(product_ids),
                    )
                ).scalars()
            )
            to_move = [pid for pid in product_ids if pid not in already_linked]

            # 1. relink
            if to_move:
                self.session.execute(
                    update(ProductPerformerDB)
                    .where(
                        ProductPerformerDB.performer_id == placeholder_id,
                        ProductPerformerDB.product_id.in_(to_move),
                    )
                    .values(performer_id=target_id),
                    execution_options={"synchronize_session": False},
                )
            if already_linked:
                self.session.execute(
                    delete(ProductPerformerDB).where(
                        ProductPerformerDB.performer_id == placeholder_id,
                        ProductPerformerDB.product_id.in_(list(already_linked)),
                    ),
                    execution_options={"synchronize_session": False},
                )
            result.relinked = len(to_move)
            result.duplicate_links = len(already_linked)

            # 2. placeholder name becomes an alias
            result.alias_added = linker.add_alias(target_id, placeholder_name, source="merge")

            # 3. migrate aliases
            aliases = self.session.execute(
                select(PerformerAliasDB.alias_name, PerformerAliasDB.source).where(
                    PerformerAliasDB.performer_id == placeholder_id
                )
            ).all()
            for alias_name, source in aliases:
                if linker.add_alias(target_id, alias_name, source=source):
                    result.aliases_migrated += 1
            self.session.execute(
                delete(PerformerAliasDB).where(PerformerAliasDB.performer_id == placeholder_id),
                execution_options={"synchronize_session": False},
            )

            # 4. delete the placeholder once unlinked
            remaining = self.session.execute(
                select(func.count())
                .select_from(ProductPerformerDB)
                .where(ProductPerformerDB.performer_id == placeholder_id)
            ).scalar_one()
            if remaining == 0:
                self.session.execute(
                    delete(PerformerDB).where(PerformerDB.id == placeholder_id),
                    execution_options={"synchronize_session": False},
                )
                result.deleted = True

            for product_id in product_ids:
                linker.refresh_performer_count(product_id)

        self.session.expire_all()
        logger.info(
            f"Merged '{placeholder_name}' into '{true_name}': "
            f"{result.relinked} relinked, {result.duplicate_links} duplicates dropped"
        )
        return result

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def run(self, dry_run: bool = False, limit: int | None = None, code: str | None = None) -> MergeReport:
        """
        Run detection, resolution and (unless dry_run) merging.

        Args:
            dry_run: Report intended merges without writing anything
            limit: Maximum number of candidates to consider
            code: Restrict to products with this business code

        Returns:
            MergeReport
        """
        report = MergeReport(dry_run=dry_run)
        candidates = self.detect(limit=limit, code=code)
        report.scanned = len(candidates)

        for candidate in candidates:
            if candidate.verdict == PlaceholderVerdict.BORDERLINE:
                report.flagged_for_review.append(candidate.name)
                continue

            resolution = self.resolve(candidate)
            if resolution is None:
                report.unresolved += 1
                logger.debug(f"Unresolved placeholder '{candidate.name}'")
                continue

            report.resolved += 1
            report.actions.append(
                {
                    "placeholder": candidate.name,
                    "true_name": resolution.true_name,
                    "method": resolution.method,
                    "business_code": resolution.business_code,
                    "products": len(candidate.product_ids),
                }
            )
            if dry_run:
                continue

            try:
                self.merge(candidate.performer_id, resolution.true_name)
                report.merged += 1
            except (SQLAlchemyError, ValueError) as e:
                logger.exception(f"Merge failed for '{candidate.name}'")
                report.errors.append(f"{candidate.name}: {e}")

        logger.info(
            f"Identity pass: {report.scanned} candidates, {report.resolved} resolved, "
            f"{report.merged} merged, {report.unresolved} unresolved, "
            f"{len(report.flagged_for_review)} flagged"
        )
        return report
