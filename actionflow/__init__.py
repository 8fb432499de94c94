import asyncio, warnings, copy, time, contextvars, contextlib, logging
from dataclasses import dataclass, field
from typing import Any, Optional, List, Dict, Literal
from enum import Enum

logger = logging.getLogger(__name__)

SortByPhase = Literal['total', 'prep', 'exec', 'post']

class TraceEventType(Enum):
    NODE_START = "node_start"
    NODE_END = "node_end"
    NODE_ERROR = "node_error"
    RETRY = "retry"
    FALLBACK = "fallback"
    TRANSITION = "transition"
    FLOW_START = "flow_start"
    FLOW_END = "flow_end"

@dataclass
class TraceEvent:
    event_type: TraceEventType
    node_name: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None

    def __repr__(self):
        data_str = f", data={self.data}" if self.data else ""
        return f"TraceEvent({self.event_type.value}, node={self.node_name}, t={self.timestamp:.4f}{data_str})"

@dataclass
class NodeTiming:
    """Phase durations (seconds) of one completed node execution."""
    node_name: str
    prep_time: float
    exec_time: float
    post_time: float
    action: Optional[str] = None

    @property
    def total_time(self) -> float:
        return self.prep_time + self.exec_time + self.post_time

class FlowTracer:
    """Records what happened during a run, for debugging.

    Usage:
        tracer = FlowTracer()
        flow.run(shared, tracer=tracer)
        tracer.print_summary()

    The tracer is active for the duration of that run only, including nested
    flows and every branch of a parallel batch.
    """
    # Keys kept on events when capture_data is off
    _LIGHT_KEYS = ('action', 'retry', 'max_retries', 'wait_time', 'error', 'from_node', 'to_node',
                   'prep_time', 'exec_time', 'post_time')

    def __init__(self, capture_data: bool = False, max_data_size: int = 1000):
        """
        Args:
            capture_data: also keep prep/exec results on events (repr, truncated)
            max_data_size: maximum length of a captured repr
        """
        self.events: List[TraceEvent] = []
        self.capture_data = capture_data
        self.max_data_size = max_data_size

    def _truncate(self, value: Any) -> Any:
        if value is None or isinstance(value, (int, float, bool)):
            return value
        s = value if isinstance(value, str) else repr(value)
        return s if len(s) <= self.max_data_size else s[:self.max_data_size] + "...[truncated]"

    def record(self, event_type: TraceEventType, node_name: str, data: Optional[Dict[str, Any]] = None):
        if data and not self.capture_data:
            data = {k: v for k, v in data.items() if k in self._LIGHT_KEYS}
        if data:
            data = {k: self._truncate(v) for k, v in data.items()}
        self.events.append(TraceEvent(event_type, node_name, time.time(), data or None))

    def _of_type(self, event_type: TraceEventType) -> List[TraceEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def get_execution_order(self) -> List[str]:
        return [e.node_name for e in self._of_type(TraceEventType.NODE_START)]

    def get_transitions(self) -> List[Dict[str, Any]]:
        return [{"from": e.data.get("from_node"), "to": e.data.get("to_node"), "action": e.data.get("action")}
                for e in self._of_type(TraceEventType.TRANSITION) if e.data]

    def get_retries(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_name, **(e.data or {})} for e in self._of_type(TraceEventType.RETRY)]

    def get_duration(self) -> float:
        if not self.events: return 0.0
        return self.events[-1].timestamp - self.events[0].timestamp

    def get_node_timings(self) -> List[NodeTiming]:
        """One NodeTiming per completed node execution, in completion order."""
        return [NodeTiming(e.node_name, e.data.get("prep_time", 0.0), e.data.get("exec_time", 0.0),
                           e.data.get("post_time", 0.0), e.data.get("action"))
                for e in self._of_type(TraceEventType.NODE_END) if e.data]

    def get_slowest_nodes(self, n: Optional[int] = None, sort_by: SortByPhase = 'total') -> List[NodeTiming]:
        """Node timings sorted slowest first by the given phase.

        Raises:
            ValueError: if sort_by is not one of 'total', 'prep', 'exec', 'post'.
        """
        if sort_by not in ('total', 'prep', 'exec', 'post'):
            raise ValueError(f"sort_by must be one of ['total', 'prep', 'exec', 'post'], got '{sort_by}'")
        attr = 'total_time' if sort_by == 'total' else f"{sort_by}_time"
        ordered = sorted(self.get_node_timings(), key=lambda t: getattr(t, attr), reverse=True)
        return ordered if n is None else ordered[:n]

    def get_slowest_node(self, sort_by: SortByPhase = 'total') -> Optional[NodeTiming]:
        slowest = self.get_slowest_nodes(1, sort_by)
        return slowest[0] if slowest else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.get_duration(),
            "execution_order": self.get_execution_order(),
            "transitions": self.get_transitions(),
            "retries": self.get_retries(),
            "node_timings": [
                {"node_name": t.node_name, "prep_time": t.prep_time, "exec_time": t.exec_time,
                 "post_time": t.post_time, "total_time": t.total_time, "action": t.action}
                for t in self.get_node_timings()
            ],
            "events": [
                {"type": e.event_type.value, "node": e.node_name, "timestamp": e.timestamp, "data": e.data}
                for e in self.events
            ],
        }

    def print_summary(self):
        if not self.events:
            print("No trace events recorded.")
            return
        print(f"\n{'='*60}\nFLOW EXECUTION TRACE\n{'='*60}")
        print(f"Total duration: {self.get_duration():.4f}s")
        print(f"Execution order: {' -> '.join(self.get_execution_order())}")
        for t in self.get_transitions():
            print(f"  {t['from']} --[{t['action']}]--> {t['to']}")
        for r in self.get_retries():
            print(f"  retry {r['node']}: attempt {r.get('retry')}/{r.get('max_retries')} failed ({r.get('error')})")
        slowest = self.get_slowest_node()
        if slowest:
            print(f"Slowest node: {slowest.node_name} ({slowest.total_time:.4f}s)")
        print(f"{'='*60}\n")

    def clear(self):
        self.events.clear()

_current_tracer: contextvars.ContextVar[Optional[FlowTracer]] = contextvars.ContextVar('actionflow_tracer', default=None)

@contextlib.contextmanager
def _tracing(tracer):
    if tracer is None:
        yield
        return
    token = _current_tracer.set(tracer)
    try: yield
    finally: _current_tracer.reset(token)

def _node_name(node) -> str:
    return getattr(node, 'name', None) or node.__class__.__name__

def _trace(event_type, node, **data):
    tracer = _current_tracer.get()
    if tracer is not None: tracer.record(event_type, _node_name(node), data)

def _check_limit(limit):
    if limit is not None and limit < 1: raise ValueError("concurrency_limit must be at least 1")
    return limit

async def _settle(aws, limit=None):
    # Every branch runs to completion or failure; the lowest-index failure is raised afterwards.
    if limit:
        sem = asyncio.Semaphore(limit)
        async def gated(aw):
            async with sem: return await aw
        aws = [gated(aw) for aw in aws]
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks: return []
    await asyncio.wait(tasks)
    failures = [t.exception() for t in tasks if not t.cancelled() and t.exception() is not None]
    if failures: raise failures[0]
    return [t.result() for t in tasks]

class BaseNode:
    def __init__(self): self.params,self.successors,self.name={},{},None
    def set_params(self,params): self.params=params
    def next(self,node,action="default"):
        if action in self.successors: warnings.warn(f"Overwriting successor for action '{action}'")
        self.successors[action]=node; return node
    def on(self,action): return _ConditionalTransition(self,action)
    def prep(self,shared): pass
    def exec(self,prep_res): pass
    def post(self,shared,prep_res,exec_res): pass
    def _exec(self,prep_res): return self.exec(prep_res)
    def _run(self,shared):
        _trace(TraceEventType.NODE_START,self)
        try:
            t0=time.perf_counter(); p=self.prep(shared)
            t1=time.perf_counter(); e=self._exec(p)
            t2=time.perf_counter(); action=self.post(shared,p,e)
        except Exception as exc:
            _trace(TraceEventType.NODE_ERROR,self,error=repr(exc)); raise
        _trace(TraceEventType.NODE_END,self,action=action,prep_time=t1-t0,exec_time=t2-t1,post_time=time.perf_counter()-t2,prep_result=p,exec_result=e)
        return action
    def run(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use Flow.")
        with _tracing(tracer): return self._run(shared)
    def __rshift__(self,other): return self.next(other)
    def __sub__(self,action):
        if isinstance(action,str): return _ConditionalTransition(self,action)
        raise TypeError("Action must be a string")

class _ConditionalTransition:
    def __init__(self,src,action): self.src,self.action=src,action
    def next(self,tgt): return self.src.next(tgt,self.action)
    def __rshift__(self,tgt): return self.next(tgt)

class Node(BaseNode):
    def __init__(self,max_retries=1,wait=0,exponential_backoff=False,max_wait=None):
        super().__init__()
        if max_retries<1: raise ValueError("max_retries must be at least 1")
        self.max_retries,self.wait,self.exponential_backoff,self.max_wait,self.cur_retry=max_retries,wait,exponential_backoff,max_wait,0
    def exec_fallback(self,prep_res,exc): raise exc
    def _get_wait_time(self,retry_count):
        if self.wait<=0: return 0
        w=self.wait*(2**retry_count) if self.exponential_backoff else self.wait
        return min(w,self.max_wait) if self.max_wait is not None else w
    def _on_failure(self,i,exc):
        # Backoff to apply after failed attempt i, or None once attempts are exhausted.
        name=_node_name(self)
        if i==self.max_retries-1:
            logger.debug("%s: attempt %d/%d failed, handing to fallback: %r",name,i+1,self.max_retries,exc)
            _trace(TraceEventType.FALLBACK,self,error=repr(exc))
            return None
        w=self._get_wait_time(i)
        logger.debug("%s: attempt %d/%d failed, retrying in %ss: %r",name,i+1,self.max_retries,w,exc)
        _trace(TraceEventType.RETRY,self,retry=i+1,max_retries=self.max_retries,wait_time=w,error=repr(exc))
        return w
    def _exec(self,prep_res):
        for i in range(self.max_retries):
            self.cur_retry=i
            try: return self.exec(prep_res)
            except Exception as e:
                w=self._on_failure(i,e)
                if w is None: return self.exec_fallback(prep_res,e)
                if w>0: time.sleep(w)

class BatchNode(Node):
    def _exec(self,items): return [super(BatchNode,self)._exec(i) for i in (items or [])]

class Flow(BaseNode):
    def __init__(self,start=None): super().__init__(); self.start_node=start
    def start(self,start): self.start_node=start; return start
    def get_next_node(self,curr,action):
        key="default" if action is None else action
        if key not in curr.successors:
            if curr.successors: warnings.warn(f"Flow ends: '{key}' not found in {list(curr.successors)}")
            return None
        return curr.successors[key]
    def _step(self,curr,action):
        nxt=self.get_next_node(curr,action)
        if nxt is not None:
            logger.debug("%s: %s --[%s]--> %s",_node_name(self),_node_name(curr),action or "default",_node_name(nxt))
            _trace(TraceEventType.TRANSITION,self,from_node=_node_name(curr),to_node=_node_name(nxt),action=action or "default")
        return copy.copy(nxt)
    def _orch(self,shared,params=None):
        curr,p,last_action=copy.copy(self.start_node),(params if params is not None else {**self.params}),None
        while curr:
            curr.set_params(p)
            last_action=curr._run(shared)
            curr=self._step(curr,last_action)
        return last_action
    def _begin(self):
        logger.debug("%s: flow started",_node_name(self))
        _trace(TraceEventType.FLOW_START,self)
    def _end(self,action):
        logger.debug("%s: flow finished with action %r",_node_name(self),action)
        _trace(TraceEventType.FLOW_END,self,action=action)
        return action
    def _run(self,shared):
        self._begin(); p=self.prep(shared); o=self._orch(shared)
        return self._end(self.post(shared,p,o))
    def post(self,shared,prep_res,exec_res): return exec_res

class BatchFlow(Flow):
    def _run(self,shared):
        self._begin(); pr=self.prep(shared) or []
        for bp in pr: self._orch(shared,{**self.params,**bp})
        return self._end(self.post(shared,pr,None))

class AsyncNode(Node):
    async def prep_async(self,shared): pass
    async def exec_async(self,prep_res): pass
    async def exec_fallback_async(self,prep_res,exc): raise exc
    async def post_async(self,shared,prep_res,exec_res): pass
    async def _exec(self,prep_res):
        for i in range(self.max_retries):
            self.cur_retry=i
            try: return await self.exec_async(prep_res)
            except Exception as e:
                w=self._on_failure(i,e)
                if w is None: return await self.exec_fallback_async(prep_res,e)
                if w>0: await asyncio.sleep(w)
    async def run_async(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use AsyncFlow.")
        with _tracing(tracer): return await self._run_async(shared)
    async def _run_async(self,shared):
        _trace(TraceEventType.NODE_START,self)
        try:
            t0=time.perf_counter(); p=await self.prep_async(shared)
            t1=time.perf_counter(); e=await self._exec(p)
            t2=time.perf_counter(); action=await self.post_async(shared,p,e)
        except Exception as exc:
            _trace(TraceEventType.NODE_ERROR,self,error=repr(exc)); raise
        _trace(TraceEventType.NODE_END,self,action=action,prep_time=t1-t0,exec_time=t2-t1,post_time=time.perf_counter()-t2,prep_result=p,exec_result=e)
        return action
    def _run(self,shared): raise RuntimeError("Use run_async.")

class AsyncBatchNode(AsyncNode,BatchNode):
    async def _exec(self,items): return [await super(AsyncBatchNode,self)._exec(i) for i in (items or [])]

class AsyncParallelBatchNode(AsyncNode,BatchNode):
    def __init__(self,max_retries=1,wait=0,exponential_backoff=False,max_wait=None,concurrency_limit=None):
        super().__init__(max_retries,wait,exponential_backoff,max_wait); self.concurrency_limit=_check_limit(concurrency_limit)
    async def _exec(self,items):
        return await _settle([super(AsyncParallelBatchNode,self)._exec(i) for i in (items or [])],self.concurrency_limit)

class AsyncFlow(Flow,AsyncNode):
    async def _orch_async(self,shared,params=None):
        curr,p,last_action=copy.copy(self.start_node),(params if params is not None else {**self.params}),None
        while curr:
            curr.set_params(p)
            last_action=await curr._run_async(shared) if isinstance(curr,AsyncNode) else curr._run(shared)
            curr=self._step(curr,last_action)
        return last_action
    async def _run_async(self,shared):
        self._begin(); p=await self.prep_async(shared); o=await self._orch_async(shared)
        return self._end(await self.post_async(shared,p,o))
    async def post_async(self,shared,prep_res,exec_res): return exec_res
    def _run(self,shared): raise RuntimeError("Use run_async.")

class AsyncBatchFlow(AsyncFlow,BatchFlow):
    async def _run_async(self,shared):
        self._begin(); pr=await self.prep_async(shared) or []
        for bp in pr: await self._orch_async(shared,{**self.params,**bp})
        return self._end(await self.post_async(shared,pr,None))

class AsyncParallelBatchFlow(AsyncFlow,BatchFlow):
    def __init__(self,start=None,concurrency_limit=None): super().__init__(start); self.concurrency_limit=_check_limit(concurrency_limit)
    async def _run_async(self,shared):
        self._begin(); pr=await self.prep_async(shared) or []
        await _settle([self._orch_async(shared,{**self.params,**bp}) for bp in pr],self.concurrency_limit)
        return self._end(await self.post_async(shared,pr,None))
