"""
VAPOR trace replay
==================
Plays a recorded single-shot execution trace into a ShadowPipeline the way
the host simulator would: one fetch notification per executed instruction,
step-back notifications for rewinds, and branch outcomes / register values
answered from the recorded execution.

Run:
    vapor --workload loop --size 4 --table
    vapor program_trace.json --events out.json --summary out.csv
"""

import argparse
import csv
import json
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vapor_pipeline import (Config, EventEmitter, FetchStatus, IClass, Instruction, Program,
                            ROLE_TABLE, STAGE_NAMES, ShadowPipeline, TickRecord, UnresolvableAddress,
                            roles)

logger = logging.getLogger(__name__)

TEXT_BASE = 0x00400000

# ----------------------------
# Trace events
# ----------------------------
@dataclass
class TraceEvent:
    address: int = 0
    regs: Dict[int, int] = field(default_factory=dict)
    rewind: bool = False

# ----------------------------
# Replay host (oracle + notification source)
# ----------------------------
class ReplayHost:
    def __init__(self, program: Program, trace: Sequence[TraceEvent],
                 registers: Optional[Dict[int, int]] = None, instruction_length: int = 4):
        self.program = program
        self.trace = list(trace)
        self.registers: Dict[int, int] = dict(registers or {})
        self.instruction_length = instruction_length
        self.cursor = 0
        # register values overwritten by each executed event, for step-back
        self._executed: List[Dict[int, Optional[int]]] = []
        self._rewind_listeners: List[Callable[[], Any]] = []

    # oracle interface
    def will_branch(self, instr: Instruction) -> bool:
        succ = self._successor_of(instr.address, self.cursor)
        if succ is None:
            return False
        return succ != instr.address + self.instruction_length

    def register_value(self, index: int) -> int:
        return self.registers.get(index, 0)

    def add_rewind_listener(self, fn: Callable[[], Any]):
        if fn not in self._rewind_listeners:
            self._rewind_listeners.append(fn)

    def _successor_of(self, address: int, start: int) -> Optional[int]:
        """Address executed right after the first surviving *address* from *start* on."""
        executed: List[int] = []
        for ev in self.trace[start:]:
            if ev.rewind:
                # a step-back cancels the last executed event
                if executed:
                    executed.pop()
                continue
            if executed and executed[-1] == address:
                return ev.address
            executed.append(ev.address)
        return None

    # driving
    @property
    def done(self) -> bool:
        return self.cursor >= len(self.trace)

    def step(self, engine: ShadowPipeline) -> Optional[FetchStatus]:
        ev = self.trace[self.cursor]
        if ev.rewind:
            self._step_back()
            self.cursor += 1
            return None
        try:
            instr = self.program.statement_at(ev.address)
        except UnresolvableAddress:
            # not from the simulated program
            logger.debug("ignoring fetch outside program at %#010x", ev.address)
            self.cursor += 1
            return None
        status = engine.on_instruction_fetched(self.program, instr)
        if status is FetchStatus.RECONNECT:
            logger.warning("pipeline lost at %s, reconnecting", instr.label())
        # execute
        self._executed.append({r: self.registers.get(r) for r in ev.regs})
        self.registers.update(ev.regs)
        self.cursor += 1
        return status

    def _step_back(self):
        if not self._executed:
            return
        for reg, value in self._executed.pop().items():
            if value is None:
                self.registers.pop(reg, None)
            else:
                self.registers[reg] = value
        for fn in list(self._rewind_listeners):
            fn()

    def run(self, engine: ShadowPipeline) -> Counter:
        statuses: Counter = Counter()
        while not self.done:
            status = self.step(engine)
            if status is not None:
                statuses[status] += 1
        return statuses

# ----------------------------
# Trace documents
# ----------------------------
def _int(value) -> int:
    return int(value, 0) if isinstance(value, str) else int(value)

def parse_statement(doc: Dict[str, Any]) -> Instruction:
    iclass = IClass.parse(doc["class"])
    instr = Instruction(address=_int(doc["address"]),
                        line=int(doc["line"]),
                        iclass=iclass,
                        operands=tuple(_int(o) for o in doc.get("operands", ())),
                        name=doc.get("name", ""))
    # offsets are read by the branch resolver
    needed = {IClass.BRANCH: 3, IClass.JAL: 2, IClass.JALR: 3}.get(iclass, 0)
    if len(instr.operands) < needed:
        raise ValueError(f"{instr.label()}: {iclass.name} needs {needed} operands")
    if iclass in ROLE_TABLE:
        roles(instr)
    return instr

def parse_event(doc) -> TraceEvent:
    if isinstance(doc, dict):
        if doc.get("rewind"):
            return TraceEvent(rewind=True)
        regs = {int(k): _int(v) for k, v in doc.get("regs", {}).items()}
        return TraceEvent(address=_int(doc["address"]), regs=regs)
    return TraceEvent(address=_int(doc))

def parse_trace(doc: Dict[str, Any]) -> ReplayHost:
    try:
        statements = [parse_statement(s) for s in doc["statements"]]
        events = [parse_event(e) for e in doc["trace"]]
    except KeyError as e:
        raise ValueError(f"trace document is missing {e}") from None
    program = Program(doc.get("name", "program"), statements, doc.get("source", ()))
    registers = {int(k): _int(v) for k, v in doc.get("registers", {}).items()}
    return ReplayHost(program, events, registers)

def load_trace(path: str) -> ReplayHost:
    with open(path) as f:
        return parse_trace(json.load(f))

# ----------------------------
# Workload helpers
# ----------------------------
Row = Tuple[str, IClass, Tuple[int, ...], str]

def mk_program(name: str, rows: Sequence[Row], base: int = TEXT_BASE) -> Program:
    """One statement per source line, laid out from *base*."""
    statements = []
    source = []
    for i, (mnemonic, iclass, operands, text) in enumerate(rows):
        statements.append(Instruction(base + 4 * i, i + 1, iclass, tuple(operands), mnemonic))
        source.append(text)
    return Program(name, statements, source)

def mk_trace(offsets: Sequence[int], regs: Optional[Dict[int, Dict[int, int]]] = None,
             base: int = TEXT_BASE) -> List[TraceEvent]:
    """Trace from statement indices; *regs* maps a position in the trace to its register writes."""
    regs = regs or {}
    return [TraceEvent(base + 4 * idx, dict(regs.get(pos, {}))) for pos, idx in enumerate(offsets)]

def workload_sequential(n: int = 5) -> ReplayHost:
    rows = [("addi", IClass.IMMEDIATE, (5 + i % 20, 0, i), f"addi x{5 + i % 20}, zero, {i}") for i in range(n)]
    return ReplayHost(mk_program("sequential", rows), mk_trace(range(n)))

def workload_dependent() -> ReplayHost:
    rows = [("addi", IClass.IMMEDIATE, (5, 0, 1), "addi t0, zero, 1"),
            ("add", IClass.ARITHMETIC, (6, 5, 5), "add t1, t0, t0")]
    return ReplayHost(mk_program("dependent", rows), mk_trace(range(2)))

def workload_branch() -> ReplayHost:
    rows = [("beq", IClass.BRANCH, (0, 0, 12), "beq zero, zero, target"),
            ("addi", IClass.IMMEDIATE, (5, 0, 1), "addi t0, zero, 1"),
            ("addi", IClass.IMMEDIATE, (6, 0, 2), "addi t1, zero, 2"),
            ("addi", IClass.IMMEDIATE, (7, 0, 3), "target: addi t2, zero, 3")]
    return ReplayHost(mk_program("branch", rows), mk_trace([0, 3]))

def workload_loop(n: int = 4) -> ReplayHost:
    rows = [("addi", IClass.IMMEDIATE, (5, 0, n), f"addi t0, zero, {n}"),
            ("addi", IClass.IMMEDIATE, (5, 5, -1), "loop: addi t0, t0, -1"),
            ("bne", IClass.BRANCH, (5, 0, -4), "bne t0, zero, loop"),
            ("ecall", IClass.ECALL, (), "ecall")]
    return ReplayHost(mk_program("loop", rows), mk_trace([0] + [1, 2] * n + [3]))

def workload_call() -> ReplayHost:
    rows = [("addi", IClass.IMMEDIATE, (10, 0, 5), "addi a0, zero, 5"),
            ("jal", IClass.JAL, (1, 12), "jal ra, func"),
            ("addi", IClass.IMMEDIATE, (17, 0, 10), "addi a7, zero, 10"),
            ("ecall", IClass.ECALL, (), "ecall"),
            ("addi", IClass.IMMEDIATE, (10, 10, 1), "func: addi a0, a0, 1"),
            ("jalr", IClass.JALR, (0, 1, 0), "jalr zero, ra, 0")]
    trace = mk_trace([0, 1, 4, 5, 2, 3], regs={1: {1: TEXT_BASE + 8}})
    return ReplayHost(mk_program("call", rows), trace, registers={1: 0})

def workload_measured() -> ReplayHost:
    rows = [("addi", IClass.IMMEDIATE, (5, 0, 1), "addi t0, zero, 1"),
            ("addi", IClass.IMMEDIATE, (6, 0, 2), "addi t1, zero, 2  # PIPELINE_MEASURE_START"),
            ("addi", IClass.IMMEDIATE, (7, 0, 3), "addi t2, zero, 3"),
            ("add", IClass.ARITHMETIC, (28, 6, 7), "add t3, t1, t2  # PIPELINE_MEASURE_END"),
            ("addi", IClass.IMMEDIATE, (17, 0, 10), "addi a7, zero, 10"),
            ("ecall", IClass.ECALL, (), "ecall")]
    return ReplayHost(mk_program("measured", rows), mk_trace(range(6)))

WORKLOADS: Dict[str, Callable[..., ReplayHost]] = {
    "sequential": workload_sequential,
    "dependent": workload_dependent,
    "branch": workload_branch,
    "loop": workload_loop,
    "call": workload_call,
    "measured": workload_measured,
}

def build_workload(name: str, size: Optional[int] = None) -> ReplayHost:
    factory = WORKLOADS[name]
    if size is not None and name in ("sequential", "loop"):
        return factory(size)
    return factory()

# ----------------------------
# Output
# ----------------------------
def format_table(records: Sequence[TickRecord]) -> str:
    header = ["CYCLE", *STAGE_NAMES]
    rows = [[str(r.cycle) + ("*" if r.region_start else ""), *r.cells()] for r in records]
    widths = [max(len(c) for c in col) for col in zip(header, *rows)]
    lines = ["  ".join(c.ljust(w) for c, w in zip(row, widths)).rstrip() for row in [header, *rows]]
    return "\n".join(lines)

def write_summary(path: str, engine: ShadowPipeline, statuses: Counter):
    st = engine.statistics()
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["program", "instructions_executed", "cycles_taken", "speedup", "ideal_speedup",
                    "boundaries", "desyncs"])
        w.writerow([engine.program.name if engine.program else "", st.instructions_executed,
                    st.cycles_taken, f"{st.speedup:.4f}", f"{st.ideal_speedup:.4f}",
                    statuses[FetchStatus.BOUNDARY], statuses[FetchStatus.RECONNECT]])

# ----------------------------
# CLI and main
# ----------------------------
def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="vapor", description="Reconstruct a 5-stage pipeline from an execution trace")
    p.add_argument("trace", nargs="?", help="JSON trace document (defaults to a built-in workload)")
    p.add_argument("--workload", choices=sorted(WORKLOADS), default="loop")
    p.add_argument("--size", type=int, default=None, help="instruction/iteration count for sequential and loop")
    p.add_argument("--failsafe-factor", type=int, default=3)
    p.add_argument("--measure-start", default="PIPELINE_MEASURE_START")
    p.add_argument("--measure-end", default="PIPELINE_MEASURE_END")
    p.add_argument("--events", default="vapor_events.json")
    p.add_argument("--summary", default="vapor_summary.csv")
    p.add_argument("--no-events", action="store_true")
    p.add_argument("--table", action="store_true", help="print the pipeline table")
    p.add_argument("--verbose", action="store_true")
    return p.parse_args(argv)

def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")
    cfg = Config(failsafe_factor=args.failsafe_factor,
                 measure_start=args.measure_start,
                 measure_end=args.measure_end,
                 verbose=args.verbose,
                 event_emit=not args.no_events)
    try:
        host = load_trace(args.trace) if args.trace else build_workload(args.workload, args.size)
    except (OSError, ValueError) as e:
        logger.error("could not load trace: %s", e)
        return 2

    engine = ShadowPipeline(host, cfg, EventEmitter(cfg.event_emit))
    statuses = host.run(engine)
    st = engine.statistics()

    if args.table:
        print(format_table(engine.records))

    # summary
    print("\n--- Pipeline Summary ---")
    print(f"Program: {host.program.name}")
    print(f"Instructions executed: {st.instructions_executed}")
    print(f"Cycles: {st.cycles_taken}")
    print(f"Speedup: {st.speedup:.2f}")
    print(f"Speedup without hazards: {st.ideal_speedup:.2f}")
    if statuses[FetchStatus.RECONNECT] or statuses[FetchStatus.REJECTED]:
        print(f"Resets: {statuses[FetchStatus.RECONNECT]} desync, {statuses[FetchStatus.REJECTED]} unsupported")

    engine.eventer.dump(args.events)
    try:
        write_summary(args.summary, engine, statuses)
        print(f"Wrote {args.summary}" + ("" if args.no_events else f" and {args.events}"))
    except OSError as e:
        print("Could not write CSV:", e)
    return 0

if __name__ == "__main__":
    sys.exit(main())
