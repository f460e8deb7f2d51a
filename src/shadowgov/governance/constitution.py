"""
Constitutional guard.

The constitution is a small set of articles, each protecting a founding
guarantee of the platform through one or more data-driven rules. A rule
matches a proposed parameter change by name keyword and forbidden value, or
a proposal description by phrase. The guard is pure: it reads the articles it
was built with and never touches storage.
"""

import logging

logger = logging.getLogger(__name__)
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors.exceptions import ArticleViolation, ConstitutionalViolation


def normalize_value(value: Any) -> str:
    """Canonical lower-case string form used for rule comparison."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value).strip().lower()


@dataclass(frozen=True)
class ProtectedRule:
    """A single pattern that a proposed change must not match.

    ``forbidden_value`` of ``None`` means any value is forbidden for a
    matching parameter name. ``exact_names`` match whole names instead of
    substrings.
    """

    reason: str
    parameter_keywords: Tuple[str, ...] = ()
    exact_names: Tuple[str, ...] = ()
    forbidden_value: Optional[str] = None
    description_phrases: Tuple[str, ...] = ()

    def matches(
        self,
        parameter_name: Optional[str],
        proposed_value: Any,
        description: Optional[str],
    ) -> bool:
        if parameter_name:
            name = parameter_name.lower()
            name_hit = name in self.exact_names or any(
                keyword in name for keyword in self.parameter_keywords
            )
            if name_hit and (
                self.forbidden_value is None
                or normalize_value(proposed_value) == self.forbidden_value
            ):
                return True

        if description and self.description_phrases:
            text = description.lower()
            if any(phrase in text for phrase in self.description_phrases):
                return True

        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "parameter_keywords": list(self.parameter_keywords),
            "exact_names": list(self.exact_names),
            "forbidden_value": self.forbidden_value,
            "description_phrases": list(self.description_phrases),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtectedRule":
        return cls(
            reason=data["reason"],
            parameter_keywords=tuple(data.get("parameter_keywords", ())),
            exact_names=tuple(data.get("exact_names", ())),
            forbidden_value=data.get("forbidden_value"),
            description_phrases=tuple(data.get("description_phrases", ())),
        )


@dataclass
class ConstitutionalArticle:
    """A protected article of the platform constitution."""

    article_number: int
    title: str
    summary: str
    rules: List[ProtectedRule] = field(default_factory=list)
    requires_founder_approval: bool = True
    requires_ninety_percent: bool = True
    minimum_discussion_days: int = 90
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_row(self) -> Dict[str, Any]:
        return {
            "article_number": self.article_number,
            "title": self.title,
            "summary": self.summary,
            "protected_rules": [rule.to_dict() for rule in self.rules],
            "requires_founder_approval": int(self.requires_founder_approval),
            "requires_ninety_percent": int(self.requires_ninety_percent),
            "minimum_discussion_days": self.minimum_discussion_days,
            "status": self.status,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConstitutionalArticle":
        return cls(
            article_number=row["article_number"],
            title=row["title"],
            summary=row["summary"],
            rules=[ProtectedRule.from_dict(r) for r in row["protected_rules"]],
            requires_founder_approval=bool(row["requires_founder_approval"]),
            requires_ninety_percent=bool(row["requires_ninety_percent"]),
            minimum_discussion_days=row["minimum_discussion_days"],
            status=row["status"],
        )


DEFAULT_ARTICLES: Tuple[ConstitutionalArticle, ...] = (
    ConstitutionalArticle(
        article_number=1,
        title="Dual-Identity Architecture",
        summary="Every participant keeps a True Self and a Shadow identity, "
        "each with its own vote.",
        rules=[
            ProtectedRule(
                reason="Cannot disable shadow identity functionality",
                parameter_keywords=("shadow",),
                forbidden_value="false",
            ),
            ProtectedRule(
                reason="Cannot disable dual-identity architecture",
                parameter_keywords=("dual_identity",),
                forbidden_value="false",
            ),
        ],
    ),
    ConstitutionalArticle(
        article_number=2,
        title="Privacy Guarantees",
        summary="The link between a True Self and its Shadow is never revealed.",
        rules=[
            ProtectedRule(
                reason="Cannot force identity revelation",
                parameter_keywords=("force_reveal", "require_identity"),
            ),
            ProtectedRule(
                reason="Cannot disable privacy protections",
                parameter_keywords=("privacy",),
                forbidden_value="false",
            ),
            ProtectedRule(
                reason="Proposals to reveal Shadow identities are unconstitutional",
                description_phrases=("reveal shadow", "unmask users"),
            ),
        ],
    ),
    ConstitutionalArticle(
        article_number=3,
        title="Proof of Humanity Requirement",
        summary="Only verified humans may vote.",
        rules=[
            ProtectedRule(
                reason="Cannot disable proof of humanity requirements",
                parameter_keywords=("poh", "proof_of_humanity"),
                exact_names=("requires_verification_to_vote",),
                forbidden_value="false",
            ),
        ],
    ),
    ConstitutionalArticle(
        article_number=4,
        title="Permanence",
        summary="Governance records are archived permanently.",
        rules=[
            ProtectedRule(
                reason="Cannot disable permanent storage",
                parameter_keywords=("arweave", "permanent_storage", "archive"),
                forbidden_value="false",
            ),
        ],
    ),
    ConstitutionalArticle(
        article_number=5,
        title="Spot-Only Token Strategy",
        summary="Platform tokens are never offered for shorting or leverage.",
        rules=[
            ProtectedRule(
                reason="Cannot enable short selling or leverage trading",
                parameter_keywords=("short", "leverage", "margin", "futures"),
                forbidden_value="true",
            ),
            ProtectedRule(
                reason="Proposals enabling short selling or leverage are unconstitutional",
                description_phrases=("short selling", "leverage trading"),
            ),
        ],
    ),
    ConstitutionalArticle(
        article_number=6,
        title="Emergency Rollback Protocol",
        summary="Enacted decisions stay reversible through the rollback protocol.",
        rules=[
            ProtectedRule(
                reason="Cannot disable emergency rollback protocol",
                parameter_keywords=("rollback", "emergency_protocol"),
                forbidden_value="false",
            ),
        ],
    ),
)


class ConstitutionalGuard:
    """Checks proposed changes against the active constitutional articles."""

    def __init__(self, articles: Optional[Sequence[ConstitutionalArticle]] = None):
        self.articles = list(articles if articles is not None else DEFAULT_ARTICLES)

    def find_violations(
        self,
        parameter_name: Optional[str] = None,
        proposed_value: Any = None,
        description: Optional[str] = None,
    ) -> List[ArticleViolation]:
        """Return every matched article, at most one entry per article."""
        violations = []
        for article in self.articles:
            if not article.is_active:
                continue
            for rule in article.rules:
                if rule.matches(parameter_name, proposed_value, description):
                    violations.append(
                        ArticleViolation(
                            article_number=article.article_number,
                            title=article.title,
                            reason=rule.reason,
                        )
                    )
                    break
        return violations

    def check(
        self,
        parameter_name: Optional[str] = None,
        proposed_value: Any = None,
        description: Optional[str] = None,
    ) -> None:
        """Raise ``ConstitutionalViolation`` if the change matches any article."""
        violations = self.find_violations(parameter_name, proposed_value, description)
        if violations:
            logger.warning(
                "Blocked proposal touching constitutional article(s) %s",
                [v.article_number for v in violations],
            )
            raise ConstitutionalViolation(violations)

    def get_article(self, article_number: int) -> Optional[ConstitutionalArticle]:
        for article in self.articles:
            if article.article_number == article_number:
                return article
        return None
