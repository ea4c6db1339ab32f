"""Rules engine for transaction auto-categorization."""

import logging
from dataclasses import dataclass
from datetime import datetime

from banksync.db.models import (
    UNCATEGORIZED,
    CategorizationRule,
    CategorySource,
    MatchType,
    Transaction,
)
from banksync.rules.defaults import DEFAULT_KEYWORDS

log = logging.getLogger('banksync.rules')


@dataclass
class RuleMatch:
    """Result of a rule matching a transaction."""

    rule: CategorizationRule
    matched_text: str
    category: str


@dataclass(frozen=True)
class Resolution:
    """A resolved category and where it came from (None when nothing matched)."""

    category: str
    source: CategorySource | None


def _rule_order(rule: CategorizationRule) -> tuple:
    return (-rule.priority, rule.created_at, rule.id or 0)


def _transaction_texts(txn: Transaction) -> list[str]:
    """Fields a rule may match: description, creditor and debtor."""
    return [text for text in (txn.description, txn.creditor_name, txn.debtor_name) if text]


class RulesEngine:
    """Engine for matching transactions against categorization rules.

    Rules are evaluated highest priority first; among equal priorities the
    oldest rule wins.
    """

    def __init__(self, rules: list[CategorizationRule]):
        self._rules = sorted(rules, key=_rule_order)

    def find_match(self, txn: Transaction) -> RuleMatch | None:
        """Find the first matching rule for a transaction."""
        texts = _transaction_texts(txn)
        for rule in self._rules:
            for text in texts:
                if self._check_pattern(rule, text):
                    return RuleMatch(rule=rule, matched_text=text, category=rule.category)
        return None

    def _check_pattern(self, rule: CategorizationRule, text: str) -> bool:
        """Check if the keyword matches text based on match type, ignoring case."""
        keyword = rule.keyword.casefold()
        text = text.casefold()
        if not keyword:
            return False
        if rule.match_type == MatchType.EXACT:
            return text == keyword
        if rule.match_type == MatchType.STARTS_WITH:
            return text.startswith(keyword)
        if rule.match_type == MatchType.ENDS_WITH:
            return text.endswith(keyword)
        return keyword in text

    def add_rule(self, rule: CategorizationRule) -> None:
        """Add a rule to the engine."""
        self._rules.append(rule)
        self._rules.sort(key=_rule_order)

    def remove_rule(self, rule_id: int) -> None:
        """Remove a rule from the engine."""
        self._rules = [r for r in self._rules if r.id != rule_id]

    def update_rules(self, rules: list[CategorizationRule]) -> None:
        """Replace all rules with a new set."""
        self._rules = sorted(rules, key=_rule_order)

    @property
    def rules(self) -> list[CategorizationRule]:
        """Get all rules in evaluation order."""
        return self._rules.copy()


def match_default_keywords(
    txn: Transaction,
    table: tuple[tuple[str, tuple[str, ...]], ...] = DEFAULT_KEYWORDS,
) -> str | None:
    """Find the first built-in category whose keyword occurs in the transaction text."""
    text = " ".join(_transaction_texts(txn)).casefold()
    for category, keywords in table:
        if any(keyword in text for keyword in keywords):
            return category
    return None


class CategoryResolver:
    """Assigns a category: user override, then user rules, then built-in keywords.

    Never raises for unmatched data; the fallback is ``Uncategorized``.
    """

    def __init__(self, default_table: tuple[tuple[str, tuple[str, ...]], ...] = DEFAULT_KEYWORDS):
        self._default_table = default_table

    def resolve(self, txn: Transaction, rules: list[CategorizationRule]) -> str:
        """Return the category for a transaction."""
        return self.explain(txn, rules).category

    def explain(self, txn: Transaction, rules: list[CategorizationRule]) -> Resolution:
        """Return the category together with the step that produced it."""
        if txn.user_category:
            return Resolution(txn.user_category, CategorySource.MANUAL)
        match = RulesEngine(rules).find_match(txn)
        if match is not None:
            log.debug(f'Rule {match.rule.id} ({match.rule.keyword!r}) matched {match.matched_text!r}')
            return Resolution(match.category, CategorySource.RULE)
        category = match_default_keywords(txn, self._default_table)
        if category is not None:
            return Resolution(category, CategorySource.AUTO)
        return Resolution(UNCATEGORIZED, None)


def effective_category(txn: Transaction) -> str:
    """Category shown for a stored transaction."""
    return txn.effective_category


def create_rule(
    user_id: str,
    keyword: str,
    category: str,
    match_type: MatchType = MatchType.CONTAINS,
    priority: int = 0,
) -> CategorizationRule:
    """Helper to create a new, unsaved categorization rule."""
    keyword = keyword.strip()
    if not keyword:
        raise ValueError("Rule keyword must not be empty")
    if not category.strip():
        raise ValueError("Rule category must not be empty")
    now = datetime.now()
    return CategorizationRule(
        id=None,
        user_id=user_id,
        keyword=keyword,
        category=category.strip(),
        match_type=match_type,
        priority=priority,
        created_at=now,
        updated_at=now,
    )
