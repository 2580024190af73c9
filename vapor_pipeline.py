"""
VAPOR shadow pipeline
=====================
Reconstructs the cycle-by-cycle behaviour of a classic 5-stage in-order
pipeline (IF, ID/OF, EX, MEM, WB) from the instruction trace of a
non-pipelined simulator.

The engine is driven by two inbound calls:

    on_instruction_fetched(program, instr)   once per executed instruction
    on_rewind()                              when the host steps back

Everything else (hazards, branch refill, undo, statistics) is derived.
"""

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

# ----------------------------
# Config dataclass
# ----------------------------
@dataclass
class Config:
    stages: int = 5
    failsafe_factor: int = 3
    instruction_length: int = 4
    measure_start: str = "PIPELINE_MEASURE_START"
    measure_end: str = "PIPELINE_MEASURE_END"
    verbose: bool = False
    event_emit: bool = True

    @property
    def failsafe(self) -> int:
        return self.stages * self.failsafe_factor

# readable stage indices
IF, IDOF, EX, MEM, WB = range(5)
STAGE_NAMES = ("IF", "ID/OF", "EX", "MEM", "WB")

DATA_HAZARD_DETECT = IDOF
DATA_HAZARD_RESOLVE = WB
CONTROL_HAZARD_DETECT = IDOF
CONTROL_HAZARD_RESOLVE = EX

CONTROL_HAZARD_LABEL = " \u2BAB"        # arrow
DATA_HAZARD_LABEL = " \u26A0\uFE0F"   # warning sign

# ----------------------------
# Errors
# ----------------------------
class PipelineError(Exception):
    pass

class UnsupportedInstructionClass(PipelineError):
    def __init__(self, instr: "Instruction"):
        super().__init__(f"unsupported instruction class {instr.iclass.name} ({instr.label()})")
        self.instr = instr

class MalformedInstruction(PipelineError, ValueError):
    def __init__(self, instr: "Instruction"):
        super().__init__(f"{instr.label()}: too few operands {list(instr.operands)}")
        self.instr = instr

class UnresolvableAddress(PipelineError):
    def __init__(self, address: int):
        super().__init__(f"no statement at address {address:#010x}")
        self.address = address

class DesyncFailure(PipelineError):
    def __init__(self, expected: "Instruction", retired: Optional["Instruction"], state: "PipelineState"):
        got = retired.label() if retired is not None else "nothing"
        super().__init__(f"could not predict pipeline: expected {expected.label()}, retired {got}")
        self.expected = expected
        self.retired = retired
        self.state = state

# ----------------------------
# Instruction classes / register roles
# ----------------------------
class IClass(Enum):
    ARITHMETIC = auto()
    BRANCH = auto()
    DOUBLE = auto()
    FLOATING = auto()
    FUSED_DOUBLE = auto()
    FUSED_FLOAT = auto()
    IMMEDIATE = auto()
    LOAD = auto()
    STORE = auto()
    JAL = auto()
    JALR = auto()
    AUIPC = auto()
    LUI = auto()
    SRLI = auto()
    SRAI = auto()
    SLLI = auto()
    ECALL = auto()
    # known to the host, no register roles modelled
    CSR = auto()
    FENCE = auto()
    URET = auto()

    @classmethod
    def parse(cls, tag: str) -> "IClass":
        try:
            return cls[tag.strip().upper().replace("-", "_")]
        except KeyError:
            raise ValueError(f"unknown instruction class tag: {tag!r}") from None

# operand positions: class -> (read operands, write operands)
ROLE_TABLE: Dict[IClass, Tuple[Tuple[int, ...], Tuple[int, ...]]] = {
    IClass.ARITHMETIC:   ((1, 2), (0,)),
    IClass.BRANCH:       ((0, 1), ()),
    IClass.DOUBLE:       ((1, 2), (0,)),
    IClass.FLOATING:     ((1, 2), (0,)),
    IClass.FUSED_DOUBLE: ((1, 2, 3), (0,)),
    IClass.FUSED_FLOAT:  ((1, 2, 3), (0,)),
    IClass.IMMEDIATE:    ((1,), (0,)),
    IClass.LOAD:         ((2,), (0,)),
    IClass.STORE:        ((0, 2), ()),
    IClass.JAL:          ((), (0,)),
    IClass.JALR:         ((1,), (0,)),
    IClass.AUIPC:        ((), (0,)),
    IClass.LUI:          ((), (0,)),
    IClass.SRLI:         ((1,), (0,)),
    IClass.SRAI:         ((1,), (0,)),
    IClass.SLLI:         ((1,), (0,)),
    IClass.ECALL:        ((), ()),
}

UNSUPPORTED_CLASSES = frozenset(c for c in IClass if c not in ROLE_TABLE)
BRANCH_CLASSES = frozenset((IClass.BRANCH, IClass.JAL, IClass.JALR))

# ----------------------------
# Instruction descriptor / program image
# ----------------------------
@dataclass(frozen=True, eq=False)
class Instruction:
    address: int
    line: int
    iclass: IClass
    operands: Tuple[int, ...] = ()
    name: str = ""

    def __eq__(self, other):
        if not isinstance(other, Instruction):
            return NotImplemented
        return self.address == other.address and self.iclass is other.iclass

    def __hash__(self):
        return hash((self.address, self.iclass))

    @property
    def is_branch(self) -> bool:
        return self.iclass in BRANCH_CLASSES

    def label(self) -> str:
        return f"{self.name or self.iclass.name.lower()} {self.line}"

def is_branch(instr: Optional[Instruction]) -> bool:
    return instr is not None and instr.is_branch

def roles(instr: Instruction) -> Tuple[FrozenSet[int], FrozenSet[int]]:
    """Return the (read, write) register sets of *instr*."""
    try:
        reads, writes = ROLE_TABLE[instr.iclass]
    except KeyError:
        raise UnsupportedInstructionClass(instr) from None
    ops = instr.operands
    try:
        return frozenset(ops[i] for i in reads), frozenset(ops[i] for i in writes)
    except IndexError:
        raise MalformedInstruction(instr) from None

class Program:
    """A loaded program image: statements by address plus its source text."""

    def __init__(self, name: str, statements: Sequence[Instruction], source: Sequence[str] = ()):
        self.name = name
        self.source = list(source)
        self.statements: Dict[int, Instruction] = {s.address: s for s in statements}

    def statement_at(self, address: int) -> Instruction:
        try:
            return self.statements[address]
        except KeyError:
            raise UnresolvableAddress(address) from None

    def __repr__(self):
        return f"Program({self.name!r}, {len(self.statements)} statements)"

# ----------------------------
# Pipeline state
# ----------------------------
Slots = Tuple[Optional[Instruction], ...]

@dataclass(frozen=True)
class PipelineState:
    slots: Slots = (None,) * 5

    def __getitem__(self, stage: int) -> Optional[Instruction]:
        return self.slots[stage]

    @property
    def is_empty(self) -> bool:
        return all(s is None for s in self.slots)

    @classmethod
    def of(cls, fetch=None, decode=None, execute=None, memory=None, writeback=None) -> "PipelineState":
        return cls((fetch, decode, execute, memory, writeback))

    def labels(self) -> List[str]:
        return [s.label() if s is not None else "" for s in self.slots]

EMPTY = PipelineState()

# ----------------------------
# Hazard detection
# ----------------------------
def data_hazards(state: PipelineState) -> Set[int]:
    reading = state[DATA_HAZARD_DETECT]
    if reading is None:
        return set()
    reads, _ = roles(reading)
    reads = reads - {0}   # zero register is not a real register
    collisions: Set[int] = set()
    for stage in range(DATA_HAZARD_DETECT + 1, DATA_HAZARD_RESOLVE + 1):
        writing = state[stage]
        if writing is None:
            continue
        _, writes = roles(writing)
        if reads & writes:
            collisions.add(stage)
            collisions.add(DATA_HAZARD_DETECT)
    # no memory collisions because of pipeline architecture
    return collisions

def control_hazards(state: PipelineState) -> Set[int]:
    return {i for i in range(CONTROL_HAZARD_DETECT, CONTROL_HAZARD_RESOLVE + 1) if is_branch(state[i])}

# ----------------------------
# Branch resolution / fetch policy
# ----------------------------
def successor(program: Program, instr: Instruction, cfg: Config) -> Instruction:
    return program.statement_at(instr.address + cfg.instruction_length)

def resolve_branch(instr: Instruction, program: Program, oracle, cfg: Config) -> Instruction:
    """Statement that should refill IF once *instr* resolves (oracle resolution).

    Raises UnresolvableAddress when the computed target holds no statement.
    """
    ops = instr.operands
    if instr.iclass is IClass.BRANCH:
        if oracle.will_branch(instr):
            return program.statement_at(instr.address + ops[2])
        return successor(program, instr, cfg)
    if instr.iclass is IClass.JAL:
        return program.statement_at(instr.address + ops[1])
    if instr.iclass is IClass.JALR:
        return program.statement_at(oracle.register_value(ops[1]) + ops[2])
    return successor(program, instr, cfg)

def next_fetch(state: PipelineState, program: Program, oracle, cfg: Config) -> Optional[Instruction]:
    resolving = state[CONTROL_HAZARD_RESOLVE]
    if is_branch(resolving):
        try:
            return resolve_branch(resolving, program, oracle, cfg)
        except UnresolvableAddress as e:
            logger.debug("branch %s unresolvable (%s), using fall-through", resolving.label(), e)
        try:
            return successor(program, resolving, cfg)
        except UnresolvableAddress:
            return None
    first = state[IF]
    if first is None:  # end of program reached
        return None
    try:
        return successor(program, first, cfg)
    except UnresolvableAddress:
        return None

# ----------------------------
# Sequencer
# ----------------------------
class Decision(Enum):
    BOOTSTRAP = "bootstrap"
    FLUSH_DURING_STALL = "flush-during-stall"
    STALL = "stall"
    DETECT_GRACE = "detect-grace"
    RESOLVE_FLUSH = "resolve-flush"
    DRAIN = "drain"
    ADVANCE = "advance"

def decide(state: PipelineState, data: Set[int], control: Set[int]) -> Decision:
    if state.is_empty:
        return Decision.BOOTSTRAP
    if DATA_HAZARD_DETECT in data:
        if CONTROL_HAZARD_RESOLVE in control:
            return Decision.FLUSH_DURING_STALL
        return Decision.STALL
    if control:
        if control == {CONTROL_HAZARD_DETECT}:
            return Decision.DETECT_GRACE
        if CONTROL_HAZARD_RESOLVE in control:
            return Decision.RESOLVE_FLUSH
        return Decision.DRAIN
    return Decision.ADVANCE

def advance(state: PipelineState, decision: Decision, executing: Instruction,
            fetched: Optional[Instruction]) -> Tuple[PipelineState, Optional[Instruction]]:
    """Apply one tick. Returns the new state and the instruction now in WB."""
    if decision is Decision.BOOTSTRAP:
        return PipelineState.of(fetch=executing), None

    s = list(state.slots)
    s[WB] = s[MEM]
    s[MEM] = s[EX]
    if decision in (Decision.FLUSH_DURING_STALL, Decision.RESOLVE_FLUSH):
        s[EX] = None
        s[IDOF] = None
        s[IF] = fetched
    elif decision in (Decision.STALL, Decision.DRAIN):
        s[EX] = None
    else:  # ADVANCE / DETECT_GRACE
        s[EX] = s[IDOF]
        s[IDOF] = s[IF]
        s[IF] = fetched
    return PipelineState(tuple(s)), s[WB]

# ----------------------------
# Tick records / undo log
# ----------------------------
@dataclass(frozen=True)
class TickRecord:
    cycle: int
    state: PipelineState
    data_hazards: FrozenSet[int]
    control_hazards: FrozenSet[int]
    decision: Decision
    region_start: bool = False

    def cells(self) -> List[str]:
        out = []
        for i, label in enumerate(self.state.labels()):
            if i in self.data_hazards:
                label += DATA_HAZARD_LABEL
            if i in self.control_hazards:
                label += CONTROL_HAZARD_LABEL
            out.append(label)
        return out

    def tags(self) -> List[Optional[str]]:
        """Per-stage hazard tag: 'data', 'control', 'both' or None."""
        out = []
        for i in range(len(self.state.slots)):
            d, c = i in self.data_hazards, i in self.control_hazards
            out.append("both" if d and c else "data" if d else "control" if c else None)
        return out

    def as_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "stages": dict(zip(STAGE_NAMES, self.state.labels())),
            "data_hazards": sorted(self.data_hazards),
            "control_hazards": sorted(self.control_hazards),
            "decision": self.decision.value,
            "region_start": self.region_start,
        }

@dataclass(frozen=True)
class Snapshot:
    state: PipelineState
    ticks: int = 0
    boundary: bool = False
    region_start: bool = False

class UndoLog:
    def __init__(self):
        self._stack: List[Snapshot] = []
        self._absorbed = 0
    def push(self, snap: Snapshot):
        self._stack.append(snap)
        if not snap.boundary:
            self._absorbed += 1
    def pop(self) -> Optional[Snapshot]:
        if not self._stack:
            return None
        snap = self._stack.pop()
        if not snap.boundary:
            self._absorbed -= 1
        return snap
    def clear(self):
        self._stack.clear()
        self._absorbed = 0
    def absorbed(self) -> int:
        return self._absorbed
    def __len__(self):
        return len(self._stack)

# ----------------------------
# Measurement window
# ----------------------------
def measurement_window(source: Sequence[str], start: str, end: str) -> FrozenSet[int]:
    """Line numbers (1-based) inside start/end marker ranges, markers inclusive."""
    lines = set()
    inside = False
    for lineno, text in enumerate(source, 1):
        if start in text:
            inside = True
        if inside:
            lines.add(lineno)
        if end in text:
            inside = False
    return frozenset(lines)

# ----------------------------
# Statistics / events
# ----------------------------
@dataclass
class Statistics:
    instructions_executed: int = 0
    cycles_taken: int = 1
    stages: int = 5

    @property
    def speedup(self) -> float:
        return self.stages * self.instructions_executed / self.cycles_taken

    @property
    def ideal_speedup(self) -> float:
        n = self.instructions_executed
        return self.stages * n / (self.stages + n - 1)

    def as_dict(self) -> dict:
        return {"instructions_executed": self.instructions_executed,
                "cycles_taken": self.cycles_taken,
                "speedup": round(self.speedup, 4),
                "ideal_speedup": round(self.ideal_speedup, 4)}

class EventEmitter:
    def __init__(self, enable: bool = True):
        self.enable = enable
        self.events: List[dict] = []
        self.listeners: List[Callable[[dict], None]] = []
    def emit(self, cycle: int, data: dict):
        if not self.enable: return
        evt = {"cycle": cycle, **data}
        self.events.append(evt)
        for fn in self.listeners:
            fn(evt)
    def of_type(self, kind: str) -> List[dict]:
        return [e for e in self.events if e.get("type") == kind]
    def dump(self, path: str):
        if not self.enable: return
        with open(path, "w") as f:
            json.dump(self.events, f, indent=2)

# ----------------------------
# Re-sync driver
# ----------------------------
class FetchStatus(Enum):
    ABSORBED = "absorbed"
    BOUNDARY = "boundary"
    RECONNECT = "reconnect"
    REJECTED = "rejected"

class ShadowPipeline:
    """Shadow 5-stage pipeline kept in step with a single-shot simulator.

    *oracle* answers ``will_branch(instr)`` and ``register_value(index)`` from
    the host's architectural state, and may offer ``add_rewind_listener``.
    Calls must be serialized by the caller.
    """

    def __init__(self, oracle, cfg: Optional[Config] = None, eventer: Optional[EventEmitter] = None):
        self.oracle = oracle
        self.cfg = cfg or Config()
        self.eventer = eventer or EventEmitter(self.cfg.event_emit)
        self.state = EMPTY
        self.records: List[TickRecord] = []
        self.undo = UndoLog()
        self.program: Optional[Program] = None
        self.window: FrozenSet[int] = frozenset()
        self._connected = False
        self._region_start = False

    # -- lifecycle --------------------------------------------------------
    def reset(self, reason: str = "user"):
        self.state = EMPTY
        self.records.clear()
        self.undo.clear()
        self.window = frozenset()
        self._connected = False
        self._region_start = False
        self.eventer.emit(0, {"type": "reset", "reason": reason})

    def _connect(self, program: Program):
        self.program = program
        self.window = measurement_window(program.source, self.cfg.measure_start, self.cfg.measure_end)
        if self.window:
            logger.info("%s: measuring %d source lines", program.name, len(self.window))
            self._region_start = True
        subscribe = getattr(self.oracle, "add_rewind_listener", None)
        if subscribe is not None:
            subscribe(self.on_rewind)
        self._connected = True

    # -- inbound interfaces -----------------------------------------------
    def on_instruction_fetched(self, program: Program, instr: Instruction) -> FetchStatus:
        if self.program is not None and program is not self.program:
            logger.info("program changed to %s, resetting", program.name)
            self.reset("program-change")
        if not self._connected:
            self._connect(program)

        if self.window and instr.line not in self.window:
            return self._boundary(instr)

        snap = Snapshot(self.state, region_start=self._region_start)
        try:
            ticks = self._sync(instr)
        except DesyncFailure as e:
            logger.error("VAPOR: %s", e)
            self.eventer.emit(len(self.records), {
                "type": "desync", "expected": instr.label(),
                "retired": e.retired.label() if e.retired is not None else None,
                "pipeline": e.state.labels()})
            self.reset("desync")
            return FetchStatus.RECONNECT
        except (UnsupportedInstructionClass, MalformedInstruction) as e:
            kind = "unsupported" if isinstance(e, UnsupportedInstructionClass) else "malformed"
            logger.error("VAPOR: %s", e)
            self.eventer.emit(len(self.records), {"type": kind, "instruction": e.instr.label(),
                                                  "class": e.instr.iclass.name})
            self.reset(kind)
            return FetchStatus.REJECTED

        # provide info for backstep
        self.undo.push(replace(snap, ticks=ticks))
        self._emit_stats()
        return FetchStatus.ABSORBED

    def on_rewind(self) -> int:
        """Undo the most recent fetch notification; returns records removed.

        Rollback across a flush is approximate: replaying forward asks the
        oracle again and may refill differently than the first time.
        """
        snap = self.undo.pop()
        if snap is None:
            return 0
        if snap.ticks:
            del self.records[-snap.ticks:]
        self.state = snap.state
        self._region_start = snap.region_start
        self.eventer.emit(len(self.records), {"type": "rewind", "removed": snap.ticks})
        self._emit_stats()
        return snap.ticks

    # -- internals --------------------------------------------------------
    def _boundary(self, instr: Instruction) -> FetchStatus:
        self.undo.push(Snapshot(self.state, 0, boundary=True, region_start=self._region_start))
        self.state = EMPTY
        self._region_start = True
        self.eventer.emit(len(self.records), {"type": "boundary", "instruction": instr.label(),
                                              "line": instr.line})
        return FetchStatus.BOUNDARY

    def _sync(self, instr: Instruction) -> int:
        taken = 0
        retired = None
        while taken < self.cfg.failsafe:
            retired = self.tick(instr)
            taken += 1
            if instr == retired:
                return taken
            # simulated wrong execution
            if retired is not None:
                break
        raise DesyncFailure(instr, retired, self.state)

    def tick(self, executing: Instruction) -> Optional[Instruction]:
        state = self.state
        data = data_hazards(state)
        control = control_hazards(state)
        decision = decide(state, data, control)
        fetched = None
        if decision is not Decision.BOOTSTRAP:
            fetched = next_fetch(state, self.program, self.oracle, self.cfg)
            # only measured lines may enter the pipeline
            if fetched is not None and self.window and fetched.line not in self.window:
                fetched = None
        self.state, retired = advance(state, decision, executing, fetched)
        self._record(decision)
        return retired

    def _record(self, decision: Decision):
        rec = TickRecord(cycle=len(self.records) + 1,
                         state=self.state,
                         data_hazards=frozenset(data_hazards(self.state)),
                         control_hazards=frozenset(control_hazards(self.state)),
                         decision=decision,
                         region_start=self._region_start)
        self._region_start = False
        self.records.append(rec)
        if self.cfg.verbose:
            logger.debug("cycle %d %-18s %s", rec.cycle, decision.value, " | ".join(rec.cells()))
        self.eventer.emit(rec.cycle, {"type": "tick", **rec.as_dict()})

    def _emit_stats(self):
        st = self.statistics()
        self.eventer.emit(len(self.records), {"type": "stats", **st.as_dict()})

    def statistics(self) -> Statistics:
        return Statistics(instructions_executed=self.undo.absorbed(),
                          cycles_taken=max(len(self.records), 1),
                          stages=self.cfg.stages)
