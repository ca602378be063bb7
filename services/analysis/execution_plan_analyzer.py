"""
Execution Plan Analyzer for SQL Server.
Walks a parsed plan tree and appends warnings for common performance anti-patterns.
Runs after ShowPlanParser.parse(); it only ever appends to warning lists.
"""
from typing import Optional
import structlog

from config.configuration import AnalyzerConfig, get_config
from services.analysis.models import ParsedPlan, PlanNode, PlanStatement, PlanWarning

logger = structlog.get_logger()

SERIAL_PLAN_REASONS = {
    "MaxDOPSetToOne": "MAXDOP is set to 1",
    "EstimatedDOPIsOne": "Estimated DOP is 1",
    "NoParallelPlansInDesktopOrExpressEdition": "Express/Desktop edition does not support parallelism",
    "CouldNotGenerateValidParallelPlan": "Optimizer could not generate a valid parallel plan",
    "QueryHintNoParallelSet": "OPTION (MAXDOP 1) hint forces serial execution",
}


def truncate(value: str, max_length: int) -> str:
    return value if len(value) <= max_length else value[:max_length] + "..."


class ExecutionPlanAnalyzer:
    """Rule engine over a parsed plan. Rules never raise; missing fields mean the rule does not fire."""

    def __init__(self, config: Optional[AnalyzerConfig] = None):
        self.config = config or get_config().analyzer

    def analyze(self, plan: ParsedPlan) -> ParsedPlan:
        """
        Append statement- and operator-level warnings to the plan.

        Args:
            plan: Plan returned by ShowPlanParser.parse()

        Returns:
            The same plan instance. Running twice duplicates warnings.
        """
        added = 0
        for stmt in plan.statements:
            added += self._analyze_statement(stmt)
            for node in stmt.nodes():
                added += self._analyze_node(node)

        logger.debug("plan_analyzed", statements=len(plan.statements), warnings_added=added)
        return plan

    def _analyze_statement(self, stmt: PlanStatement) -> int:
        # Serial plan with a recorded reason
        if not stmt.non_parallel_plan_reason:
            return 0

        reason = SERIAL_PLAN_REASONS.get(stmt.non_parallel_plan_reason, stmt.non_parallel_plan_reason)
        stmt.warnings.append(PlanWarning(
            warning_type="Serial Plan",
            message=f"Query forced to run serially: {reason}",
            severity="Warning",
        ))
        return 1

    def _analyze_node(self, node: PlanNode) -> int:
        before = len(node.warnings)
        self._check_filter(node)
        self._check_eager_spool(node)
        self._check_udf_time(node)
        self._check_row_estimate(node)
        return len(node.warnings) - before

    def _check_filter(self, node: PlanNode) -> None:
        """Rows travelled through the tree only to be discarded by a late Filter."""
        if node.physical_op == "Filter" and node.predicate:
            predicate = truncate(node.predicate, self.config.predicate_truncate_length)
            node.warnings.append(PlanWarning(
                warning_type="Filter Operator",
                message=f"Filter discards rows late in the plan. Predicate: {predicate}",
                severity="Warning",
            ))

    def _check_eager_spool(self, node: PlanNode) -> None:
        op = node.physical_op.lower()
        if "eager" in op and "spool" in op:
            node.warnings.append(PlanWarning(
                warning_type="Eager Index Spool",
                message="Optimizer is building a temporary index at runtime. A permanent index may help.",
                severity="Warning",
            ))

    def _check_udf_time(self, node: PlanNode) -> None:
        if node.udf_cpu_time_us <= 0 and node.udf_elapsed_time_us <= 0:
            return
        cpu_ms = node.udf_cpu_time_us / 1000.0
        elapsed_ms = node.udf_elapsed_time_us / 1000.0
        critical = elapsed_ms >= self.config.udf_critical_elapsed_ms
        node.warnings.append(PlanWarning(
            warning_type="UDF Execution",
            message=f"Scalar UDF executing on this operator. UDF elapsed: {elapsed_ms:.1f}ms, UDF CPU: {cpu_ms:.1f}ms",
            severity="Critical" if critical else "Warning",
        ))

    def _check_row_estimate(self, node: PlanNode) -> None:
        """Large gaps between estimated and actual rows (actual plans only)."""
        if not node.has_actual_stats or node.estimate_rows <= 0:
            return

        threshold = self.config.row_mismatch_ratio
        ratio = node.actual_rows / node.estimate_rows
        if threshold > ratio > 1.0 / threshold:
            return

        underestimated = ratio >= threshold
        direction = "underestimated" if underestimated else "overestimated"
        if underestimated:
            factor = ratio
        else:
            factor = 1.0 / ratio if ratio > 0 else float("inf")
        factor_text = f"{factor:.0f}x" if factor != float("inf") else "no rows returned,"

        node.warnings.append(PlanWarning(
            warning_type="Row Estimate Mismatch",
            message=(f"Estimated {node.estimate_rows:,.0f} rows, actual {node.actual_rows:,} "
                     f"({factor_text} {direction}). May cause poor plan choices."),
            severity="Critical" if factor >= self.config.row_mismatch_critical_factor else "Warning",
        ))
