"""
SQL Server Execution Plan MCP
"""
import sys
from typing import Dict, Any, Optional

from mcp.server.fastmcp import FastMCP  # type: ignore[import-untyped]
import structlog
from config.configuration import get_config
from services.analysis.plan_report_service import PlanReportService
from services.common.exceptions import PlanMonitorError
from services.common.logging import configure_logging

# Load Config
try:
    config = get_config()
except PlanMonitorError as e:
    print(f"FATAL: Config load failed: {e}", file=sys.stderr)
    sys.exit(1)

configure_logging(log_level=config.server.log_level, json_format=config.server.json_logs)
logger = structlog.get_logger()

mcp = FastMCP("sql-plan-analyzer", host=config.server.host, port=config.server.port)

report_service = PlanReportService(config=config)


def _run_tool(tool_name: str, func, *args) -> Dict[str, Any]:
    try:
        return func(*args)
    except PlanMonitorError as e:
        logger.warning("tool_input_rejected", tool=tool_name, error=str(e), **e.details)
        return {"success": False, "error": str(e)}


@mcp.tool()
def analyze_showplan(plan_xml: str) -> Dict[str, Any]:
    """
    Parse and analyze a SQL Server execution plan (ShowPlan XML, estimated or actual).

    Returns per statement:
    - Cost, row estimate, DOP and serial-plan reason
    - Warnings (spills, implicit conversions, row estimate gaps, eager spools, UDFs, ...)
    - Missing index recommendations with CREATE INDEX text
    - The most expensive operators by share of statement cost
    """
    return _run_tool("analyze_showplan", report_service.analyze, plan_xml)


@mcp.tool()
def get_missing_indexes(plan_xml: str) -> Dict[str, Any]:
    """
    List the optimizer's missing index recommendations from a plan, highest impact first.
    The generated CREATE INDEX statements are advisory; review before deploying.
    """
    return _run_tool("get_missing_indexes", report_service.missing_indexes, plan_xml)


@mcp.tool()
def get_plan_tree(plan_xml: str, max_depth: Optional[int] = None) -> Dict[str, Any]:
    """
    Get the operator tree of a plan with cost percentages and warning types.

    Args:
        plan_xml: ShowPlan XML text.
        max_depth: Optional depth limit. Deeper operators are summarized as a count.
    """
    return _run_tool("get_plan_tree", report_service.operator_tree, plan_xml, max_depth)


@mcp.tool()
def config_info() -> Dict[str, Any]:
    """Return the analyzer thresholds and report limits in effect."""
    return {
        "analyzer": config.analyzer.model_dump(),
        "report": config.report.model_dump(),
    }


if __name__ == "__main__":
    print(f"Starting SQL Plan Analyzer MCP ({config.server.transport}) on "
          f"{config.server.host}:{config.server.port}", file=sys.stderr)
    mcp.run(transport=config.server.transport)
