"""
Data model for parsed SQL Server execution plans.

A ParsedPlan is built fresh by ShowPlanParser.parse(); after that the only
mutation is the ExecutionPlanAnalyzer appending to ``warnings`` lists.
"""
from typing import Iterator, List, Optional, Literal, Tuple
from pydantic import BaseModel, Field

Severity = Literal["Info", "Warning", "Critical"]

STATEMENT_NODE_ID = -1


class PlanWarning(BaseModel):
    warning_type: str
    message: str
    severity: Severity = "Warning"


class MissingIndex(BaseModel):
    database: str = ""
    schema_name: str = ""
    table: str = ""
    impact: float = 0.0
    equality_columns: List[str] = Field(default_factory=list)
    inequality_columns: List[str] = Field(default_factory=list)
    include_columns: List[str] = Field(default_factory=list)
    create_statement: str = ""

    @property
    def key_columns(self) -> List[str]:
        return self.equality_columns + self.inequality_columns


class MemoryGrantInfo(BaseModel):
    serial_required_memory_kb: int = 0
    serial_desired_memory_kb: int = 0
    required_memory_kb: int = 0
    desired_memory_kb: int = 0
    requested_memory_kb: int = 0
    granted_memory_kb: int = 0
    max_used_memory_kb: int = 0


class PlanNode(BaseModel):
    """One operator (RelOp) in the plan tree."""

    # Identity
    node_id: int = 0
    physical_op: str = ""
    logical_op: str = ""

    # Cost
    estimated_total_subtree_cost: float = 0.0
    estimated_operator_cost: float = 0.0
    estimate_rows: float = 0.0
    estimate_io: float = 0.0
    estimate_cpu: float = 0.0
    estimate_rebinds: float = 0.0
    estimate_rewinds: float = 0.0
    estimated_row_size: int = 0
    cost_percent: int = 0

    # Actual runtime stats, summed across threads (elapsed is the max)
    has_actual_stats: bool = False
    actual_rows: int = 0
    actual_executions: int = 0
    actual_rows_read: int = 0
    actual_rebinds: int = 0
    actual_rewinds: int = 0
    actual_elapsed_ms: int = 0
    actual_cpu_ms: int = 0
    actual_logical_reads: int = 0
    actual_physical_reads: int = 0
    actual_scans: int = 0
    actual_read_aheads: int = 0
    actual_lob_logical_reads: int = 0
    actual_lob_physical_reads: int = 0
    actual_lob_read_aheads: int = 0
    udf_cpu_time_us: int = 0
    udf_elapsed_time_us: int = 0
    actual_execution_mode: Optional[str] = None

    # Parallelism
    parallel: bool = False
    execution_mode: Optional[str] = None
    partitioning_type: Optional[str] = None
    partition_columns: Optional[str] = None

    # Object reference
    database_name: Optional[str] = None
    object_name: Optional[str] = None
    full_object_name: Optional[str] = None
    index_name: Optional[str] = None
    storage_type: Optional[str] = None

    # Predicates and column lists
    seek_predicates: Optional[str] = None
    predicate: Optional[str] = None
    hash_keys_probe: Optional[str] = None
    hash_keys_build: Optional[str] = None
    build_residual: Optional[str] = None
    probe_residual: Optional[str] = None
    output_columns: Optional[str] = None
    order_by: Optional[str] = None
    outer_references: Optional[str] = None
    inner_side_join_columns: Optional[str] = None
    outer_side_join_columns: Optional[str] = None
    group_by: Optional[str] = None
    segment_column: Optional[str] = None
    defined_values: Optional[str] = None
    top_expression: Optional[str] = None
    set_predicate: Optional[str] = None

    # Scan/seek flags
    ordered: bool = False
    scan_direction: Optional[str] = None
    forced_index: bool = False
    force_scan: bool = False
    force_seek: bool = False
    no_expand_hint: bool = False
    table_cardinality: float = 0.0
    estimated_rows_read: float = 0.0

    # Operator-specific flags
    is_percent: bool = False
    many_to_many: bool = False

    # Adaptive join
    is_adaptive: bool = False
    adaptive_threshold_rows: float = 0.0
    estimated_join_type: Optional[str] = None
    actual_join_type: Optional[str] = None

    warnings: List[PlanWarning] = Field(default_factory=list)
    children: List["PlanNode"] = Field(default_factory=list)

    @property
    def is_expensive(self) -> bool:
        return self.cost_percent >= 25

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def walk(self) -> Iterator["PlanNode"]:
        """Pre-order iteration over this node and everything beneath it."""
        for node, _ in self.iter_with_parent():
            yield node

    def iter_with_parent(self, parent: Optional["PlanNode"] = None) -> Iterator[Tuple["PlanNode", Optional["PlanNode"]]]:
        """Pre-order iteration yielding (node, parent) pairs. Uses an explicit stack, so depth is unbounded."""
        stack = [(self, parent)]
        while stack:
            node, node_parent = stack.pop()
            yield node, node_parent
            stack.extend((child, node) for child in reversed(node.children))


PlanNode.model_rebuild()


class PlanStatement(BaseModel):
    statement_text: str = ""
    statement_type: str = ""
    statement_subtree_cost: float = 0.0
    statement_est_rows: int = 0
    root_node: Optional[PlanNode] = None
    missing_indexes: List[MissingIndex] = Field(default_factory=list)
    memory_grant: Optional[MemoryGrantInfo] = None
    warnings: List[PlanWarning] = Field(default_factory=list)

    # Statement-level metadata
    cardinality_estimation_model_version: int = 0
    compile_time_ms: int = 0
    compile_memory_kb: int = 0
    compile_cpu_ms: int = 0
    non_parallel_plan_reason: Optional[str] = None
    query_hash: Optional[str] = None
    query_plan_hash: Optional[str] = None
    cached_plan_size_kb: int = 0
    degree_of_parallelism: int = 0
    retrieved_from_cache: bool = False

    def nodes(self) -> Iterator[PlanNode]:
        if self.root_node is not None:
            yield from self.root_node.walk()


class PlanBatch(BaseModel):
    statements: List[PlanStatement] = Field(default_factory=list)


class ParsedPlan(BaseModel):
    raw_xml: str = ""
    build_version: Optional[str] = None
    build: Optional[str] = None
    batches: List[PlanBatch] = Field(default_factory=list)
    # Set only when the document was not well-formed XML
    parse_error: Optional[str] = None

    @property
    def statements(self) -> List[PlanStatement]:
        return [stmt for batch in self.batches for stmt in batch.statements]

    @property
    def all_missing_indexes(self) -> List[MissingIndex]:
        return [mi for stmt in self.statements for mi in stmt.missing_indexes]

    @property
    def is_empty(self) -> bool:
        return not self.batches
