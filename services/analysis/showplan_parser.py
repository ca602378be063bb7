"""
ShowPlan XML parser.
Builds a ParsedPlan operator tree from SQL Server execution plan XML
(estimated or actual) and attributes per-operator cost.
"""
import re
import xml.etree.ElementTree as ET
from typing import List, Optional
import structlog

from services.analysis.cost_attribution import compute_operator_costs
from services.analysis.models import (
    MemoryGrantInfo, MissingIndex, ParsedPlan, PlanBatch, PlanNode,
    PlanStatement, PlanWarning, STATEMENT_NODE_ID,
)
from services.analysis.xml_helpers import (
    RELOP, q, child_relops, column_list, column_refs, first_scalar_string,
    format_column_ref, operator_element, parse_bool, parse_float, parse_int,
    scoped_descendants, strip_brackets,
)

logger = structlog.get_logger()

# .sqlplan files declare encoding="utf-16"; expat rejects that on already-decoded text
_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")

# Per-thread counters that are summed across RunTimeCountersPerThread records
_SUMMED_COUNTERS = {
    "actual_rows": "ActualRows",
    "actual_executions": "ActualExecutions",
    "actual_rows_read": "ActualRowsRead",
    "actual_rebinds": "ActualRebinds",
    "actual_rewinds": "ActualRewinds",
    "actual_cpu_ms": "ActualCPUms",
    "actual_logical_reads": "ActualLogicalReads",
    "actual_physical_reads": "ActualPhysicalReads",
    "actual_scans": "ActualScans",
    "actual_read_aheads": "ActualReadAheads",
    "actual_lob_logical_reads": "ActualLobLogicalReads",
    "actual_lob_physical_reads": "ActualLobPhysicalReads",
    "actual_lob_read_aheads": "ActualLobReadAheads",
    "udf_cpu_time_us": "UdfCpuTime",
}


def build_create_index_statement(table: str, schema_name: str, key_columns: List[str],
                                 include_columns: List[str]) -> str:
    """
    Advisory CREATE INDEX text for a missing index recommendation.
    Only the first three key columns go into the index name.
    """
    if not key_columns:
        return ""
    name = f"IX_{table}_{'_'.join(key_columns[:3])}"
    create = f"CREATE NONCLUSTERED INDEX [{name}]\nON {schema_name}.{table} ({', '.join(key_columns)})"
    if include_columns:
        create += f"\nINCLUDE ({', '.join(include_columns)})"
    return create


class ShowPlanParser:
    """Parses ShowPlan XML into a ParsedPlan. Never raises on bad input."""

    def parse(self, xml: str) -> ParsedPlan:
        """
        Parse a ShowPlan XML document.

        Args:
            xml: Raw ShowPlan XML text

        Returns:
            ParsedPlan. A document that is not well-formed, or that contains no
            statements, yields a plan with no batches.
        """
        plan = ParsedPlan(raw_xml=xml or "")

        try:
            root = ET.fromstring(_XML_DECLARATION.sub("", plan.raw_xml, count=1))
        except (ET.ParseError, ValueError) as e:
            logger.warning("showplan_parse_failed", error=str(e), length=len(plan.raw_xml))
            plan.parse_error = str(e)
            return plan

        plan.build_version = root.get("Version")
        plan.build = root.get("Build")

        # ShowPlanXML -> BatchSequence -> Batch -> Statements
        for batch_el in root.iter(q("Batch")):
            batch = PlanBatch()
            statements_el = batch_el.find(q("Statements"))
            if statements_el is not None:
                for stmt_el in statements_el:
                    batch.statements.append(self._parse_statement(stmt_el))
            if batch.statements:
                plan.batches.append(batch)

        # Some producers emit StmtSimple without the batch wrapper
        if not plan.batches:
            batch = PlanBatch(statements=[self._parse_statement(el) for el in root.iter(q("StmtSimple"))])
            if batch.statements:
                plan.batches.append(batch)

        compute_operator_costs(plan)

        logger.debug("showplan_parsed",
                     batches=len(plan.batches),
                     statements=len(plan.statements),
                     build_version=plan.build_version)
        return plan

    def _parse_statement(self, stmt_el: ET.Element) -> PlanStatement:
        stmt = PlanStatement(
            statement_text=stmt_el.get("StatementText", ""),
            statement_type=stmt_el.get("StatementType", ""),
            statement_subtree_cost=parse_float(stmt_el.get("StatementSubTreeCost")),
            statement_est_rows=int(parse_float(stmt_el.get("StatementEstRows"))),
            query_hash=stmt_el.get("QueryHash"),
            query_plan_hash=stmt_el.get("QueryPlanHash"),
        )

        query_plan_el = stmt_el.find(q("QueryPlan"))
        if query_plan_el is None:
            return stmt

        mem_el = query_plan_el.find(q("MemoryGrantInfo"))
        if mem_el is not None:
            stmt.memory_grant = MemoryGrantInfo(
                serial_required_memory_kb=parse_int(mem_el.get("SerialRequiredMemory")),
                serial_desired_memory_kb=parse_int(mem_el.get("SerialDesiredMemory")),
                required_memory_kb=parse_int(mem_el.get("RequiredMemory")),
                desired_memory_kb=parse_int(mem_el.get("DesiredMemory")),
                requested_memory_kb=parse_int(mem_el.get("RequestedMemory")),
                granted_memory_kb=parse_int(mem_el.get("GrantedMemory")),
                max_used_memory_kb=parse_int(mem_el.get("MaxUsedMemory")),
            )

        stmt.cached_plan_size_kb = parse_int(query_plan_el.get("CachedPlanSize"))
        stmt.degree_of_parallelism = int(parse_float(query_plan_el.get("DegreeOfParallelism")))
        stmt.non_parallel_plan_reason = query_plan_el.get("NonParallelPlanReason")
        stmt.retrieved_from_cache = parse_bool(query_plan_el.get("RetrievedFromCache"))
        stmt.compile_time_ms = parse_int(query_plan_el.get("CompileTime"))
        stmt.compile_memory_kb = parse_int(query_plan_el.get("CompileMemory"))
        stmt.compile_cpu_ms = parse_int(query_plan_el.get("CompileCPU"))
        stmt.cardinality_estimation_model_version = int(
            parse_float(query_plan_el.get("CardinalityEstimationModelVersion")))

        stmt.missing_indexes = self._parse_missing_indexes(query_plan_el)

        relop_el = query_plan_el.find(RELOP)
        if relop_el is not None:
            stmt_type = stmt.statement_type.upper() or "QUERY"
            stmt.root_node = PlanNode(
                node_id=STATEMENT_NODE_ID,
                physical_op=stmt_type,
                logical_op=stmt_type,
                estimated_total_subtree_cost=stmt.statement_subtree_cost,
                children=[self._build_tree(relop_el)],
            )

        return stmt

    def _build_tree(self, root_el: ET.Element) -> PlanNode:
        """Parse a RelOp and everything beneath it, without recursing per level."""
        root = self._parse_relop(root_el)
        pending = [(root_el, root)]
        while pending:
            relop_el, node = pending.pop()
            for child_el in child_relops(relop_el):
                child = self._parse_relop(child_el)
                node.children.append(child)
                pending.append((child_el, child))
        return root

    def _parse_relop(self, relop_el: ET.Element) -> PlanNode:
        """One operator's own fields. Children are attached by _build_tree()."""
        node = PlanNode(
            node_id=int(parse_float(relop_el.get("NodeId"))),
            physical_op=relop_el.get("PhysicalOp", ""),
            logical_op=relop_el.get("LogicalOp", ""),
            estimated_total_subtree_cost=parse_float(relop_el.get("EstimatedTotalSubtreeCost")),
            estimate_rows=parse_float(relop_el.get("EstimateRows")),
            estimate_io=parse_float(relop_el.get("EstimateIO")),
            estimate_cpu=parse_float(relop_el.get("EstimateCPU")),
            estimate_rebinds=parse_float(relop_el.get("EstimateRebinds")),
            estimate_rewinds=parse_float(relop_el.get("EstimateRewinds")),
            estimated_row_size=int(parse_float(relop_el.get("AvgRowSize"))),
            parallel=parse_bool(relop_el.get("Parallel")),
            execution_mode=relop_el.get("EstimatedExecutionMode"),
            table_cardinality=parse_float(relop_el.get("TableCardinality")),
            estimated_rows_read=parse_float(relop_el.get("EstimatedRowsRead")),
        )
        if node.estimated_rows_read == 0:
            node.estimated_rows_read = parse_float(relop_el.get("EstimateRowsWithoutRowGoal"))

        op_el = operator_element(relop_el)
        if op_el is not None:
            self._apply_object_reference(node, op_el)
            self._apply_operator_properties(node, op_el)

        output_list = column_refs(relop_el.find(q("OutputList")))
        if output_list:
            node.output_columns = ", ".join(output_list)

        node.warnings = self._parse_warnings(relop_el)

        runtime_el = relop_el.find(q("RunTimeInformation"))
        if runtime_el is not None:
            self._apply_runtime_stats(node, runtime_el)

        return node

    def _apply_object_reference(self, node: PlanNode, op_el: ET.Element) -> None:
        obj_el = next(scoped_descendants(op_el, q("Object")), None)
        if obj_el is None:
            return

        db = strip_brackets(obj_el.get("Database"))
        schema = strip_brackets(obj_el.get("Schema"))
        table = strip_brackets(obj_el.get("Table"))
        index = strip_brackets(obj_el.get("Index"))

        node.database_name = db
        node.index_name = index
        node.storage_type = obj_el.get("Storage")

        short_name = ".".join(p for p in (schema, table) if p)
        node.object_name = short_name or None

        full_name = ".".join(p for p in (db, schema, table) if p)
        if index:
            full_name += f".{index}"
        node.full_object_name = full_name or None

    def _apply_operator_properties(self, node: PlanNode, op_el: ET.Element) -> None:
        node.hash_keys_probe = self._joined_columns(op_el, "HashKeysProbe")
        node.hash_keys_build = self._joined_columns(op_el, "HashKeysBuild")
        node.ordered = parse_bool(op_el.get("Ordered"))

        seek_parts = []
        seek_elements = list(scoped_descendants(op_el, q("SeekPredicateNew"))) + \
            list(scoped_descendants(op_el, q("SeekPredicate")))
        for seek_el in seek_elements:
            for scalar in seek_el.iter(q("ScalarOperator")):
                text = scalar.get("ScalarString")
                if text:
                    seek_parts.append(text)
        if seek_parts:
            node.seek_predicates = " AND ".join(seek_parts)

        node.predicate = first_scalar_string(op_el.find(q("Predicate")))
        node.partitioning_type = op_el.get("PartitioningType")
        node.build_residual = first_scalar_string(op_el.find(q("BuildResidual")))
        node.probe_residual = first_scalar_string(op_el.find(q("ProbeResidual")))

        order_by_el = op_el.find(q("OrderBy"))
        if order_by_el is not None:
            parts = []
            for col_el in order_by_el.findall(q("OrderByColumn")):
                col_ref = col_el.find(q("ColumnReference"))
                name = format_column_ref(col_ref) if col_ref is not None else ""
                if name:
                    direction = "DESC" if col_el.get("Ascending") == "false" else "ASC"
                    parts.append(f"{name} {direction}")
            node.order_by = ", ".join(parts) or None

        node.outer_references = column_list(op_el, "OuterReferences")
        node.inner_side_join_columns = column_list(op_el, "InnerSideJoinColumns")
        node.outer_side_join_columns = column_list(op_el, "OuterSideJoinColumns")
        node.group_by = column_list(op_el, "GroupBy")
        node.partition_columns = column_list(op_el, "PartitionColumns")

        segment_ref = op_el.find(f"{q('SegmentColumn')}/{q('ColumnReference')}")
        if segment_ref is not None:
            node.segment_column = format_column_ref(segment_ref)

        defined_el = op_el.find(q("DefinedValues"))
        if defined_el is not None:
            parts = []
            for dv_el in defined_el.findall(q("DefinedValue")):
                col_ref = dv_el.find(q("ColumnReference"))
                scalar = dv_el.find(q("ScalarOperator"))
                col_name = format_column_ref(col_ref) if col_ref is not None else ""
                expr = scalar.get("ScalarString", "") if scalar is not None else ""
                if col_name and expr:
                    parts.append(f"{col_name} = {expr}")
                elif expr or col_name:
                    parts.append(expr or col_name)
            node.defined_values = "; ".join(parts) or None

        node.scan_direction = op_el.get("ScanDirection")
        node.forced_index = parse_bool(op_el.get("ForcedIndex"))
        node.force_scan = parse_bool(op_el.get("ForceScan"))
        node.force_seek = parse_bool(op_el.get("ForceSeek"))
        node.no_expand_hint = parse_bool(op_el.get("NoExpandHint"))

        node.top_expression = first_scalar_string(op_el.find(q("TopExpression")))
        node.is_percent = parse_bool(op_el.get("IsPercent"))
        node.set_predicate = first_scalar_string(op_el.find(q("SetPredicate")))
        node.many_to_many = parse_bool(op_el.get("ManyToMany"))

        node.is_adaptive = parse_bool(op_el.get("IsAdaptive"))
        node.adaptive_threshold_rows = parse_float(op_el.get("AdaptiveThresholdRows"))
        node.estimated_join_type = op_el.get("EstimatedJoinType")
        node.actual_join_type = op_el.get("ActualJoinType")

    @staticmethod
    def _joined_columns(op_el: ET.Element, element_name: str) -> Optional[str]:
        # Unlike column_list(), an empty element still yields "" rather than None
        el = op_el.find(q(element_name))
        if el is None:
            return None
        return ", ".join(column_refs(el))

    def _apply_runtime_stats(self, node: PlanNode, runtime_el: ET.Element) -> None:
        """Aggregate per-thread counters: counts add up, elapsed time is the slowest thread."""
        node.has_actual_stats = True
        totals = dict.fromkeys(_SUMMED_COUNTERS, 0)
        max_elapsed = 0
        max_udf_elapsed = 0
        exec_mode = None

        for thread_el in runtime_el.findall(q("RunTimeCountersPerThread")):
            for field_name, attr_name in _SUMMED_COUNTERS.items():
                totals[field_name] += parse_int(thread_el.get(attr_name))
            max_elapsed = max(max_elapsed, parse_int(thread_el.get("ActualElapsedms")))
            max_udf_elapsed = max(max_udf_elapsed, parse_int(thread_el.get("UdfElapsedTime")))
            if exec_mode is None:
                exec_mode = thread_el.get("ActualExecutionMode")

        for field_name, total in totals.items():
            setattr(node, field_name, total)
        node.actual_elapsed_ms = max_elapsed
        node.udf_elapsed_time_us = max_udf_elapsed
        node.actual_execution_mode = exec_mode

    def _parse_missing_indexes(self, query_plan_el: ET.Element) -> List[MissingIndex]:
        result = []
        missing_el = query_plan_el.find(q("MissingIndexes"))
        if missing_el is None:
            return result

        for group_el in missing_el.findall(q("MissingIndexGroup")):
            impact = parse_float(group_el.get("Impact"))
            for index_el in group_el.findall(q("MissingIndex")):
                mi = MissingIndex(
                    database=strip_brackets(index_el.get("Database", "")),
                    schema_name=strip_brackets(index_el.get("Schema", "")),
                    table=strip_brackets(index_el.get("Table", "")),
                    impact=impact,
                )
                for group in index_el.findall(q("ColumnGroup")):
                    columns = [strip_brackets(c.get("Name", "")) for c in group.findall(q("Column"))]
                    columns = [c for c in columns if c]
                    usage = group.get("Usage", "")
                    if usage == "EQUALITY":
                        mi.equality_columns = columns
                    elif usage == "INEQUALITY":
                        mi.inequality_columns = columns
                    elif usage == "INCLUDE":
                        mi.include_columns = columns

                mi.create_statement = build_create_index_statement(
                    mi.table, mi.schema_name, mi.key_columns, mi.include_columns)
                result.append(mi)
        return result

    def _parse_warnings(self, relop_el: ET.Element) -> List[PlanWarning]:
        result = []
        warnings_el = relop_el.find(q("Warnings"))
        if warnings_el is None:
            return result

        if parse_bool(warnings_el.get("NoJoinPredicate")):
            result.append(PlanWarning(
                warning_type="No Join Predicate",
                message="This join has no join predicate (possible cross join)",
                severity="Critical",
            ))

        for spill_el in warnings_el.findall(q("SpillToTempDb")):
            level = spill_el.get("SpillLevel", "?")
            threads = spill_el.get("SpilledThreadCount", "?")
            result.append(PlanWarning(
                warning_type="Spill to TempDb",
                message=f"Spill level {level}, {threads} thread(s)",
                severity="Warning",
            ))

        mem_el = warnings_el.find(q("MemoryGrantWarning"))
        if mem_el is not None:
            kind = mem_el.get("GrantWarningKind", "Unknown")
            requested = parse_int(mem_el.get("RequestedMemory"))
            granted = parse_int(mem_el.get("GrantedMemory"))
            max_used = parse_int(mem_el.get("MaxUsedMemory"))
            result.append(PlanWarning(
                warning_type="Memory Grant",
                message=f"{kind}: Requested {requested:,} KB, Granted {granted:,} KB, Used {max_used:,} KB",
                severity="Warning",
            ))

        for convert_el in warnings_el.findall(q("PlanAffectingConvert")):
            issue = convert_el.get("ConvertIssue", "Unknown")
            expression = convert_el.get("Expression", "")
            result.append(PlanWarning(
                warning_type="Implicit Conversion",
                message=f"{issue}: {expression}",
                severity="Warning" if "Cardinality" in issue else "Critical",
            ))

        no_stats_el = warnings_el.find(q("ColumnsWithNoStatistics"))
        if no_stats_el is not None:
            columns = [c.get("Column", "") for c in no_stats_el.findall(q("ColumnReference"))]
            result.append(PlanWarning(
                warning_type="Missing Statistics",
                message=f"No statistics on: {', '.join(c for c in columns if c)}",
                severity="Warning",
            ))

        for wait_el in warnings_el.findall(q("Wait")):
            result.append(PlanWarning(
                warning_type="Wait",
                message=f"{wait_el.get('WaitType', '')}: {wait_el.get('WaitTime', '')}ms",
                severity="Info",
            ))

        return result


def parse_plan(xml: str) -> ParsedPlan:
    """Module-level convenience wrapper around ShowPlanParser().parse()."""
    return ShowPlanParser().parse(xml)
