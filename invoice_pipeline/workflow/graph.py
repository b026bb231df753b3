import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from invoice_pipeline.errors import PipelineError
from invoice_pipeline.models.invoice import utcnow
from invoice_pipeline.models.processing import ProcessingStep, StepState
from invoice_pipeline.workflow.state import PipelineState

logger = logging.getLogger(__name__)

StepFn = Callable[[PipelineState], Awaitable[PipelineState]]
StepListener = Callable[["PipelineStep", PipelineState], None]

RUN_KEY = "pipeline_run"


@dataclass(frozen=True)
class PipelineStep:
    """
    One named stage of the pipeline. `progress` is the percentage reported
    while the step runs; `skip_when` routes around the step based on the state.
    """
    name: str
    progress: int
    run: StepFn
    skip_when: Optional[Callable[[PipelineState], bool]] = None


@dataclass
class _Run:
    records: Dict[str, ProcessingStep]
    on_step_start: Optional[StepListener]
    state: Dict[str, Any] = field(default_factory=dict)


class PipelineGraph:
    """
    Compiles an ordered list of steps into a LangGraph StateGraph.

    Each step becomes a node; steps with a `skip_when` predicate are reached
    through conditional edges that route past them. Every node moves its
    record pending -> running -> completed | failed, and steps the route went
    past end up skipped. Execution halts on the first failure and the error is
    re-raised unchanged (PipelineErrors get the failing step and correlation id
    attached).
    """

    def __init__(self, steps: Sequence[PipelineStep], state_schema: type = PipelineState):
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names in pipeline: {names}")
        self.steps = list(steps)
        self.workflow = StateGraph(state_schema)
        self._build_graph()

    def _build_graph(self):
        # 1. Add Nodes
        for step in self.steps:
            self.workflow.add_node(step.name, self._node(step))

        # 2. Entry Point
        if self.steps and self.steps[0].skip_when is None:
            self.workflow.set_entry_point(self.steps[0].name)
        else:
            self._add_route(START, 0)

        # 3. Edges, conditional wherever the next step may be skipped
        for index, step in enumerate(self.steps):
            following = index + 1
            if following < len(self.steps) and self.steps[following].skip_when is None:
                self.workflow.add_edge(step.name, self.steps[following].name)
            elif following < len(self.steps):
                self._add_route(step.name, following)
            else:
                self.workflow.add_edge(step.name, END)

        # 4. Compile
        self.app = self.workflow.compile()

    def _add_route(self, source: str, start: int):
        def route(state: PipelineState) -> str:
            for step in self.steps[start:]:
                if step.skip_when is None or not step.skip_when(state):
                    return step.name
            return END

        destinations = [step.name for step in self.steps[start:]] + [END]
        self.workflow.add_conditional_edges(source, route, destinations)

    def _node(self, step: PipelineStep):
        async def node(state: PipelineState, config: RunnableConfig) -> PipelineState:
            run: _Run = config["configurable"][RUN_KEY]
            record = run.records[step.name]
            correlation_id = state.get("correlation_id")

            record.state = StepState.RUNNING
            record.start_time = utcnow()
            started = time.perf_counter()
            if run.on_step_start:
                run.on_step_start(step, state)
            logger.info(f"[{correlation_id}] Step: {step.name}")

            try:
                state = await step.run(state)
            except Exception as e:
                record.state = StepState.FAILED
                record.error = str(e)
                self._finish(record, started)
                if isinstance(e, PipelineError):
                    e.step = e.step or step.name
                    e.correlation_id = e.correlation_id or correlation_id
                logger.error(f"[{correlation_id}] Step {step.name} failed after "
                             f"{record.duration_ms:.1f} ms: {e}")
                raise
            finally:
                # Steps write into the state as they go; keep what they managed
                run.state.update(state)

            record.state = StepState.COMPLETED
            self._finish(record, started)
            return state

        return node

    def new_records(self) -> List[ProcessingStep]:
        return [ProcessingStep(name=step.name) for step in self.steps]

    async def run(self,
                  state: PipelineState,
                  records: List[ProcessingStep],
                  on_step_start: Optional[StepListener] = None) -> PipelineState:
        """
        Run the compiled graph over `state`. The caller's dict is updated in
        place with every result written so far, on success and on failure.
        """
        run = _Run(records={record.name: record for record in records},
                   on_step_start=on_step_start, state=dict(state))
        finished = False
        try:
            result = await self.app.ainvoke(state, config={"configurable": {RUN_KEY: run}})
            run.state.update(result)
            finished = True
        finally:
            state.update(run.state)
            self._mark_skipped(records, finished, state.get("correlation_id"))
        return state

    @staticmethod
    def _mark_skipped(records: List[ProcessingStep], finished: bool, correlation_id: Optional[str]):
        # Pending records before the point the run reached were routed around
        reached = [i for i, record in enumerate(records) if record.state != StepState.PENDING]
        if finished:
            last = len(records)
        else:
            last = reached[-1] if reached else 0
        for record in records[:last]:
            if record.state == StepState.PENDING:
                record.state = StepState.SKIPPED
                logger.debug(f"[{correlation_id}] Step {record.name} skipped")

    @staticmethod
    def _finish(record: ProcessingStep, started: float):
        record.end_time = utcnow()
        record.duration_ms = (time.perf_counter() - started) * 1000


def failed_step(records: List[ProcessingStep]) -> Optional[str]:
    for record in records:
        if record.state == StepState.FAILED:
            return record.name
    return None
