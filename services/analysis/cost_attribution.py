"""
Operator cost attribution.

The optimizer reports cumulative subtree cost per operator. An operator's own
cost is its subtree cost minus its children's subtree costs, clamped at zero
because children occasionally report slightly more than their parent.
"""
from services.analysis.models import ParsedPlan, PlanNode, PlanStatement


def statement_total_cost(stmt: PlanStatement) -> float:
    total = stmt.statement_subtree_cost
    if total <= 0 and stmt.root_node is not None:
        total = stmt.root_node.estimated_total_subtree_cost
    if total <= 0:
        total = 1.0
    return total


def compute_node_costs(root: PlanNode, total_statement_cost: float) -> None:
    """Assign estimated_operator_cost and cost_percent to root and all its descendants."""
    # Reversed pre-order visits every node after all of its descendants
    for node in reversed(list(root.walk())):
        children_cost = sum(c.estimated_total_subtree_cost for c in node.children)
        node.estimated_operator_cost = max(0.0, node.estimated_total_subtree_cost - children_cost)
        percent = round(node.estimated_operator_cost / total_statement_cost * 100)
        node.cost_percent = min(100, max(0, percent))


def compute_statement_costs(stmt: PlanStatement) -> None:
    if stmt.root_node is None:
        return
    compute_node_costs(stmt.root_node, statement_total_cost(stmt))


def compute_operator_costs(plan: ParsedPlan) -> None:
    for stmt in plan.statements:
        compute_statement_costs(stmt)
