"""
Query optimization recommendations.

Each rule is an independent keyword heuristic over a slow query pattern.
The engine applies every rule to every pattern in the order the patterns
were supplied and keeps the first ten suggestions; it does not re-rank.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import IndexSnapshot, Priority, Recommendation, SlowQueryPattern
from .sql_text import extract_tables, has_where_clause, is_select

MAX_RECOMMENDATIONS = 10


@dataclass
class RuleContext:
    """Information rules may consult besides the pattern itself."""
    snapshots: Sequence[IndexSnapshot] = field(default_factory=tuple)

    def has_index_on(self, tables: Iterable[str], column: str) -> bool:
        """True if a known index on one of ``tables`` mentions ``column`` in its name."""
        tables = {t.lower() for t in tables}
        column = column.lower()
        for snapshot in self.snapshots:
            table = snapshot.table_name.lower().split('.')[-1]
            index = snapshot.index_name.lower().split('.')[-1]
            if table in tables and column in index:
                return True
        return False


class RecommendationRule:
    """Base class for a recommendation heuristic."""

    name = "rule"

    def evaluate(self, pattern: SlowQueryPattern, context: RuleContext) -> Optional[Recommendation]:
        raise NotImplementedError


class MissingTenantIndexRule(RecommendationRule):
    """Filtered queries on a tenant-scoping column with no index on it."""

    name = "missing_tenant_index"

    def __init__(self, tenant_columns: Tuple[str, ...] = ("tenant_id",), improvement_factor: float = 0.7):
        self.tenant_columns = tenant_columns
        self.improvement_factor = improvement_factor

    def evaluate(self, pattern, context):
        query = pattern.query.lower()
        if not has_where_clause(query):
            return None

        tables = extract_tables(query)
        for column in self.tenant_columns:
            if column in query and not context.has_index_on(tables, column):
                table = tables[0] if tables else "table_name"
                return Recommendation(
                    query_pattern=pattern.query,
                    issue=f"Missing {column} index",
                    recommendation=f"Create composite index with {column} as first column",
                    priority=Priority.HIGH,
                    estimated_improvement=f"{round(pattern.avg_time * self.improvement_factor)}ms reduction",
                    implementation=(
                        f"CREATE INDEX CONCURRENTLY idx_{table}_{column} "
                        f"ON {table} ({column}, other_columns);"
                    ),
                )
        return None


class NPlusOneRule(RecommendationRule):
    """Many cheap executions of the same shape."""

    name = "n_plus_one"

    def __init__(self, min_calls: int = 50, max_avg_time_ms: float = 50.0):
        self.min_calls = min_calls
        self.max_avg_time_ms = max_avg_time_ms

    def evaluate(self, pattern, context):
        if pattern.count > self.min_calls and pattern.avg_time < self.max_avg_time_ms:
            return Recommendation(
                query_pattern=pattern.query,
                issue="Possible N+1 query pattern",
                recommendation="Consider using JOINs or batch loading",
                priority=Priority.MEDIUM,
                estimated_improvement="80% query reduction",
                implementation="Optimize application code to use batch queries or proper JOINs",
            )
        return None


class FullTableScanRule(RecommendationRule):
    """Unfiltered selects that are slow on average."""

    name = "full_table_scan"

    def __init__(self, min_avg_time_ms: float = 200.0, improvement_factor: float = 0.9):
        self.min_avg_time_ms = min_avg_time_ms
        self.improvement_factor = improvement_factor

    def evaluate(self, pattern, context):
        query = pattern.query
        if is_select(query) and not has_where_clause(query) and pattern.avg_time > self.min_avg_time_ms:
            return Recommendation(
                query_pattern=pattern.query,
                issue="Full table scan detected",
                recommendation="Add WHERE clause with indexed columns",
                priority=Priority.HIGH,
                estimated_improvement=f"{round(pattern.avg_time * self.improvement_factor)}ms reduction",
                implementation="Add appropriate WHERE conditions and ensure proper indexing",
            )
        return None


def default_rules() -> List[RecommendationRule]:
    return [MissingTenantIndexRule(), NPlusOneRule(), FullTableScanRule()]


class RecommendationEngine:
    """Applies recommendation rules to slow query patterns."""

    def __init__(self, rules: Optional[Sequence[RecommendationRule]] = None,
                 limit: int = MAX_RECOMMENDATIONS):
        self.rules = list(rules) if rules is not None else default_rules()
        self.limit = limit

    def add_rule(self, rule: RecommendationRule) -> None:
        self.rules.append(rule)

    def generate(self, patterns: Sequence[SlowQueryPattern],
                 snapshots: Sequence[IndexSnapshot] = ()) -> List[Recommendation]:
        context = RuleContext(snapshots=tuple(snapshots))
        recommendations: List[Recommendation] = []

        for pattern in patterns:
            for rule in self.rules:
                recommendation = rule.evaluate(pattern, context)
                if recommendation is not None:
                    recommendations.append(recommendation)
                    if len(recommendations) >= self.limit:
                        return recommendations

        return recommendations
