"""
Tests for PlanReportService report shapes.
"""
import pytest
from config.configuration import PlanMonitorConfig, ReportConfig
from services.analysis.plan_report_service import PlanReportService
from services.common.exceptions import ValidationError
from plan_builders import (
    SHOWPLAN_NS, nested_chain_plan, object_ref, relop, runtime_threads, scalar, showplan, simple_scan_plan, stmt_simple,
)


@pytest.fixture
def service(mock_config):
    return PlanReportService(config=mock_config)


def _join_plan():
    """Hash join over two scans, with a missing index and a late filter."""
    scan_a = relop(3, "Table Scan", 0.3, op_tag="TableScan", op_body=object_ref("[Customers]"),
                   runtime=runtime_threads([{"ActualRows": 10, "ActualExecutions": 1, "ActualElapsedms": 4}]))
    scan_b = relop(4, "Clustered Index Scan", 0.5, op_tag="IndexScan",
                   op_body=object_ref("[Orders]", "[PK_Orders]"))
    join = relop(2, "Hash Match", 0.9, logical_op="Inner Join", op_tag="Hash", op_body=scan_a + scan_b)
    filt = relop(1, "Filter", 1.0, op_tag="Filter",
                 op_body=f'<Predicate>{scalar("[Orders].[Total]>(100)")}</Predicate>{join}')
    missing = ('<MissingIndexes>'
               '<MissingIndexGroup Impact="40"><MissingIndex Database="[Sales]" Schema="[dbo]" Table="[Customers]">'
               '<ColumnGroup Usage="EQUALITY"><Column Name="[Region]" ColumnId="2" /></ColumnGroup>'
               '</MissingIndex></MissingIndexGroup>'
               '<MissingIndexGroup Impact="95"><MissingIndex Database="[Sales]" Schema="[dbo]" Table="[Orders]">'
               '<ColumnGroup Usage="EQUALITY"><Column Name="[CustomerId]" ColumnId="2" /></ColumnGroup>'
               '<ColumnGroup Usage="INCLUDE"><Column Name="[Total]" ColumnId="5" /></ColumnGroup>'
               '</MissingIndex></MissingIndexGroup>'
               '</MissingIndexes>')
    return showplan(stmt_simple(
        filt, text="  SELECT * FROM Orders o JOIN Customers c ON c.Id = o.CustomerId  ", cost=1.0,
        stmt_attrs='QueryHash="0x01" QueryPlanHash="0x02"',
        query_plan_attrs='DegreeOfParallelism="1" NonParallelPlanReason="MaxDOPSetToOne" CompileTime="7"',
        query_plan_body=missing + '<MemoryGrantInfo GrantedMemory="1024" MaxUsedMemory="512" />',
    ))


class TestInputValidation:
    @pytest.mark.parametrize("xml", ["", "   \n"])
    def test_empty_input_rejected(self, service, xml):
        with pytest.raises(ValidationError):
            service.analyze(xml)

    def test_oversized_input_rejected(self):
        config = PlanMonitorConfig(report=ReportConfig(max_plan_xml_length=100))
        service = PlanReportService(config=config)
        with pytest.raises(ValidationError) as exc_info:
            service.analyze(simple_scan_plan())
        assert exc_info.value.details["max_length"] == 100
        assert exc_info.value.details["length"] > 100

    def test_bad_depth_rejected(self, service):
        with pytest.raises(ValidationError):
            service.operator_tree(simple_scan_plan(), max_depth=0)


class TestAnalyze:
    def test_unparsable_plan(self, service):
        result = service.analyze("<ShowPlanXML")
        assert result["success"] is False
        assert result["error"].startswith("Plan XML could not be parsed:")

    def test_plan_without_statements(self, service):
        result = service.analyze(f'<ShowPlanXML xmlns="{SHOWPLAN_NS}" />')
        assert result == {"success": False, "error": "Plan XML contains no statements."}

    def test_statement_report(self, service):
        result = service.analyze(_join_plan())

        assert result["success"] is True
        assert result["build_version"] == "1.564"
        assert result["statement_count"] == 1

        stmt = result["statements"][0]
        assert stmt["statement_text"] == "SELECT * FROM Orders o JOIN Customers c ON c.Id = o.CustomerId"
        assert stmt["statement_type"] == "SELECT"
        assert stmt["estimated_cost"] == 1.0
        assert stmt["degree_of_parallelism"] == 1
        assert stmt["non_parallel_plan_reason"] == "MaxDOPSetToOne"
        assert stmt["query_hash"] == "0x01"
        assert stmt["query_plan_hash"] == "0x02"
        assert stmt["compile_time_ms"] == 7
        assert stmt["memory_grant"]["granted_memory_kb"] == 1024
        assert stmt["has_actual_stats"] is True
        assert len(stmt["missing_indexes"]) == 2

    def test_warnings_are_flattened(self, service):
        stmt = service.analyze(_join_plan())["statements"][0]
        by_type = {w["warning_type"]: w for w in stmt["warnings"]}

        serial = by_type["Serial Plan"]
        assert serial["node_id"] is None
        assert serial["operator"] is None

        filt = by_type["Filter Operator"]
        assert filt["node_id"] == 1
        assert filt["operator"] == "Filter"
        assert filt["severity"] == "Warning"

    def test_top_operators(self, service):
        stmt = service.analyze(_join_plan())["statements"][0]
        top = stmt["top_operators"]

        # Filter and Hash Match tie at 10%; ties keep tree order
        assert [op["node_id"] for op in top] == [4, 3, 1, 2]
        assert top[0]["cost_percent"] == 50
        assert top[0]["object"] == "Sales.dbo.Orders.PK_Orders"
        assert top[0]["is_expensive"] is True
        assert "actual_rows" not in top[0]
        assert all(op["node_id"] != -1 for op in top)

        scan_a = next(op for op in top if op["node_id"] == 3)
        assert scan_a["actual_rows"] == 10
        assert scan_a["actual_elapsed_ms"] == 4

        filt = next(op for op in top if op["node_id"] == 1)
        assert filt["predicate"] == "[Orders].[Total]>(100)"

    def test_top_operator_limit(self):
        service = PlanReportService(config=PlanMonitorConfig(report=ReportConfig(top_operators=2)))
        stmt = service.analyze(_join_plan())["statements"][0]
        assert len(stmt["top_operators"]) == 2

    def test_statement_text_truncated(self):
        service = PlanReportService(config=PlanMonitorConfig(report=ReportConfig(statement_text_truncate_length=6)))
        stmt = service.analyze(_join_plan())["statements"][0]
        assert stmt["statement_text"] == "SELECT..."

    def test_estimated_plan_has_no_actual_stats(self, service):
        stmt = service.analyze(simple_scan_plan())["statements"][0]
        assert stmt["has_actual_stats"] is False
        assert stmt["memory_grant"] is None
        assert stmt["warnings"] == []


class TestMissingIndexes:
    def test_sorted_by_impact(self, service):
        result = service.missing_indexes(_join_plan())
        assert result["success"] is True
        assert result["count"] == 2

        first, second = result["missing_indexes"]
        assert first["table"] == "Orders"
        assert first["impact"] == 95
        assert first["include_columns"] == ["Total"]
        assert first["create_statement"].startswith("CREATE NONCLUSTERED INDEX [IX_Orders_CustomerId]")
        assert second["table"] == "Customers"

    def test_no_recommendations(self, service):
        result = service.missing_indexes(simple_scan_plan())
        assert result == {"success": True, "count": 0, "missing_indexes": []}

    def test_unparsable_plan(self, service):
        assert service.missing_indexes("not xml")["success"] is False


class TestOperatorTree:
    def test_full_tree(self, service):
        result = service.operator_tree(_join_plan())
        tree = result["statements"][0]["tree"]

        assert tree["node_id"] == -1
        assert tree["physical_op"] == "SELECT"
        filt = tree["children"][0]
        assert filt["warnings"] == ["Filter Operator"]
        join = filt["children"][0]
        assert [c["object"] for c in join["children"]] == ["dbo.Customers", "dbo.Orders"]
        assert join["children"][0]["children"] == []

    def test_depth_limit_summarizes_descendants(self, service):
        tree = service.operator_tree(_join_plan(), max_depth=2)["statements"][0]["tree"]
        filt = tree["children"][0]
        assert "children" not in filt
        # Hash Match plus its two scans
        assert filt["truncated_children"] == 3

    def test_leaf_at_depth_limit(self, service):
        tree = service.operator_tree(simple_scan_plan(), max_depth=2)["statements"][0]["tree"]
        scan = tree["children"][0]
        assert "truncated_children" not in scan
        assert "children" not in scan

    def test_statement_without_plan(self, service):
        result = service.operator_tree(showplan(stmt_simple(None, stmt_type="SET ON/OFF")))
        assert result["statements"][0]["tree"] is None


class TestDeepPlans:
    def test_analyze_deep_chain(self, service):
        result = service.analyze(nested_chain_plan(1500))
        assert result["success"] is True
        assert len(result["statements"][0]["top_operators"]) == 5

    def test_operator_tree_deeper_than_plan(self, service):
        tree = service.operator_tree(nested_chain_plan(1500), max_depth=5000)["statements"][0]["tree"]
        levels = 0
        node = tree
        while node.get("children"):
            node = node["children"][0]
            levels += 1
        assert levels == 1500
        assert node["physical_op"] == "Table Scan"
        assert "truncated_children" not in node

    def test_operator_tree_depth_limit_on_deep_chain(self, service):
        tree = service.operator_tree(nested_chain_plan(1500), max_depth=3)["statements"][0]["tree"]
        cut = tree["children"][0]["children"][0]
        assert "children" not in cut
        # Node 1 is at the limit; nodes 2..1499 are summarized
        assert cut["node_id"] == 1
        assert cut["truncated_children"] == 1498
