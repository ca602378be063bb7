"""
Plan Report Service.
Parses and analyzes ShowPlan XML and shapes the result into JSON-ready
dictionaries for the MCP tools.
"""
from typing import Dict, Any, List, Optional
import structlog

from config.configuration import PlanMonitorConfig, get_config
from services.analysis.execution_plan_analyzer import ExecutionPlanAnalyzer, truncate
from services.analysis.models import ParsedPlan, PlanNode, PlanStatement, STATEMENT_NODE_ID
from services.analysis.showplan_parser import ShowPlanParser
from services.common.exceptions import ValidationError

logger = structlog.get_logger()


class PlanReportService:
    """
    Builds structured reports from plan XML.
    Parser and analyzer hold no per-call state, so one instance serves all tool calls.
    """

    def __init__(self, config: Optional[PlanMonitorConfig] = None,
                 parser: Optional[ShowPlanParser] = None,
                 analyzer: Optional[ExecutionPlanAnalyzer] = None):
        self.config = config or get_config()
        self.parser = parser or ShowPlanParser()
        self.analyzer = analyzer or ExecutionPlanAnalyzer(self.config.analyzer)

    def load_plan(self, plan_xml: str) -> ParsedPlan:
        """
        Validate, parse and analyze plan XML.

        Raises:
            ValidationError: If the input is empty or exceeds the configured size
        """
        if not plan_xml or not plan_xml.strip():
            raise ValidationError("Plan XML is empty.")

        max_length = self.config.report.max_plan_xml_length
        if len(plan_xml) > max_length:
            raise ValidationError(f"Plan XML exceeds maximum length of {max_length} characters.",
                                  details={"length": len(plan_xml), "max_length": max_length})

        plan = self.parser.parse(plan_xml)
        return self.analyzer.analyze(plan)

    def analyze(self, plan_xml: str) -> Dict[str, Any]:
        """
        Full diagnostic report: per-statement metadata, warnings, missing
        indexes and the most expensive operators.
        """
        plan = self.load_plan(plan_xml)
        if plan.is_empty:
            return self._empty_result(plan)

        statements = [self._statement_report(stmt) for stmt in plan.statements]
        logger.info("plan_report_built",
                    statements=len(statements),
                    warnings=sum(len(s["warnings"]) for s in statements))
        return {
            "success": True,
            "build_version": plan.build_version,
            "statement_count": len(statements),
            "statements": statements,
        }

    def missing_indexes(self, plan_xml: str) -> Dict[str, Any]:
        plan = self.load_plan(plan_xml)
        if plan.is_empty:
            return self._empty_result(plan)

        indexes = sorted(plan.all_missing_indexes, key=lambda mi: mi.impact, reverse=True)
        return {
            "success": True,
            "count": len(indexes),
            "missing_indexes": [mi.model_dump() for mi in indexes],
        }

    def operator_tree(self, plan_xml: str, max_depth: Optional[int] = None) -> Dict[str, Any]:
        """Depth-bounded operator tree per statement."""
        plan = self.load_plan(plan_xml)
        if plan.is_empty:
            return self._empty_result(plan)

        depth = max_depth if max_depth is not None else self.config.report.default_tree_depth
        if depth < 1:
            raise ValidationError("max_depth must be at least 1.")

        return {
            "success": True,
            "statements": [
                {
                    "statement_text": self._statement_text(stmt),
                    "tree": self._node_tree(stmt.root_node, depth) if stmt.root_node else None,
                }
                for stmt in plan.statements
            ],
        }

    def _empty_result(self, plan: ParsedPlan) -> Dict[str, Any]:
        if plan.parse_error:
            error = f"Plan XML could not be parsed: {plan.parse_error}"
        else:
            error = "Plan XML contains no statements."
        return {"success": False, "error": error}

    def _statement_text(self, stmt: PlanStatement) -> str:
        return truncate(stmt.statement_text.strip(), self.config.report.statement_text_truncate_length)

    def _statement_report(self, stmt: PlanStatement) -> Dict[str, Any]:
        operators = [n for n in stmt.nodes() if n.node_id != STATEMENT_NODE_ID]
        top = sorted(operators, key=lambda n: n.cost_percent, reverse=True)[:self.config.report.top_operators]

        return {
            "statement_text": self._statement_text(stmt),
            "statement_type": stmt.statement_type,
            "estimated_cost": stmt.statement_subtree_cost,
            "estimated_rows": stmt.statement_est_rows,
            "degree_of_parallelism": stmt.degree_of_parallelism,
            "non_parallel_plan_reason": stmt.non_parallel_plan_reason,
            "query_hash": stmt.query_hash,
            "query_plan_hash": stmt.query_plan_hash,
            "compile_time_ms": stmt.compile_time_ms,
            "memory_grant": stmt.memory_grant.model_dump() if stmt.memory_grant else None,
            "has_actual_stats": any(n.has_actual_stats for n in operators),
            "warnings": self._collect_warnings(stmt),
            "missing_indexes": [mi.model_dump() for mi in stmt.missing_indexes],
            "top_operators": [self._operator_summary(n) for n in top],
        }

    def _collect_warnings(self, stmt: PlanStatement) -> List[Dict[str, Any]]:
        result = [{"node_id": None, "operator": None, **w.model_dump()} for w in stmt.warnings]
        for node in stmt.nodes():
            for w in node.warnings:
                result.append({"node_id": node.node_id, "operator": node.physical_op, **w.model_dump()})
        return result

    def _operator_summary(self, node: PlanNode) -> Dict[str, Any]:
        summary = {
            "node_id": node.node_id,
            "physical_op": node.physical_op,
            "logical_op": node.logical_op,
            "object": node.full_object_name,
            "cost_percent": node.cost_percent,
            "operator_cost": round(node.estimated_operator_cost, 6),
            "estimated_rows": node.estimate_rows,
            "is_expensive": node.is_expensive,
        }
        if node.has_actual_stats:
            summary.update({
                "actual_rows": node.actual_rows,
                "actual_executions": node.actual_executions,
                "actual_elapsed_ms": node.actual_elapsed_ms,
                "actual_cpu_ms": node.actual_cpu_ms,
                "actual_logical_reads": node.actual_logical_reads,
            })
        if node.predicate:
            summary["predicate"] = node.predicate
        if node.seek_predicates:
            summary["seek_predicates"] = node.seek_predicates
        return summary

    @staticmethod
    def _node_entry(node: PlanNode) -> Dict[str, Any]:
        return {
            "node_id": node.node_id,
            "physical_op": node.physical_op,
            "object": node.object_name,
            "cost_percent": node.cost_percent,
            "warnings": [w.warning_type for w in node.warnings],
        }

    def _node_tree(self, root: PlanNode, max_depth: int) -> Dict[str, Any]:
        tree = self._node_entry(root)
        pending = [(root, tree, max_depth)]
        while pending:
            node, entry, depth = pending.pop()
            if depth <= 1:
                if node.children:
                    entry["truncated_children"] = sum(1 for c in node.children for _ in c.walk())
                continue
            entry["children"] = []
            for child in node.children:
                child_entry = self._node_entry(child)
                entry["children"].append(child_entry)
                pending.append((child, child_entry, depth - 1))
        return tree
