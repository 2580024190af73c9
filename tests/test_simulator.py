import csv
import json
import tempfile
import unittest
from pathlib import Path

from vapor_pipeline import FetchStatus, IClass, ShadowPipeline
from vapor_simulator import (TEXT_BASE, ReplayHost, TraceEvent, build_workload, format_table, load_trace, main,
                             mk_program, mk_trace,
                             parse_statement, parse_trace, workload_loop)

LOOP_DOC = {
    "name": "countdown",
    "source": ["addi t0, zero, 2", "loop: addi t0, t0, -1", "bne t0, zero, loop", "ecall"],
    "statements": [
        {"address": "0x00400000", "line": 1, "class": "immediate", "name": "addi", "operands": [5, 0, 2]},
        {"address": "0x00400004", "line": 2, "class": "immediate", "name": "addi", "operands": [5, 5, -1]},
        {"address": "0x00400008", "line": 3, "class": "branch", "name": "bne", "operands": [5, 0, -4]},
        {"address": "0x0040000c", "line": 4, "class": "ecall", "name": "ecall"},
    ],
    "trace": ["0x00400000", "0x00400004", {"address": "0x00400008", "regs": {"5": 1}},
              "0x00400004", "0x00400008", "0x0040000c"],
}


class ReplayHostTest(unittest.TestCase):
    def test_branch_outcome_from_lookahead(self):
        host = workload_loop(2)
        bne = host.program.statement_at(TEXT_BASE + 8)
        self.assertTrue(host.will_branch(bne))
        host.cursor = 4
        self.assertFalse(host.will_branch(bne))
        host.cursor = len(host.trace)
        self.assertFalse(host.will_branch(bne))

    def test_step_back_over_not_taken_branch(self):
        rows = [("addi", IClass.IMMEDIATE, (6, 0, 1), "addi t1, zero, 1"),
                ("beq", IClass.BRANCH, (6, 7, 8), "beq t1, t2, skip"),
                ("addi", IClass.IMMEDIATE, (8, 0, 3), "addi s0, zero, 3"),
                ("addi", IClass.IMMEDIATE, (9, 0, 4), "skip: addi s1, zero, 4")]
        trace = mk_trace([0, 1]) + [TraceEvent(rewind=True)] + mk_trace([1, 2, 3])
        host = ReplayHost(mk_program("stepback", rows), trace)
        beq = host.program.statement_at(TEXT_BASE + 4)
        self.assertFalse(host.will_branch(beq))
        engine = ShadowPipeline(host)
        statuses = host.run(engine)
        self.assertEqual(statuses, {FetchStatus.ABSORBED: 5})
        self.assertEqual(engine.eventer.of_type("desync"), [])
        self.assertEqual(len(engine.records), 10)
        self.assertEqual(engine.statistics().instructions_executed, 4)

    def test_register_writes_and_step_back(self):
        host = parse_trace(LOOP_DOC)
        engine = ShadowPipeline(host)
        for _ in range(3):
            host.step(engine)
        self.assertEqual(host.register_value(5), 1)
        host._step_back()
        self.assertEqual(host.register_value(5), 0)
        self.assertEqual(engine.statistics().instructions_executed, 2)

    def test_fetch_outside_program_is_ignored(self):
        doc = dict(LOOP_DOC, trace=["0x00400000", "0x00001000", "0x00400004"])
        host = parse_trace(doc)
        statuses = host.run(ShadowPipeline(host))
        self.assertEqual(statuses, {FetchStatus.ABSORBED: 2})


class TraceDocumentTest(unittest.TestCase):
    def test_parse_and_replay(self):
        host = parse_trace(LOOP_DOC)
        self.assertEqual(host.program.name, "countdown")
        self.assertEqual(host.trace[2].regs, {5: 1})
        engine = ShadowPipeline(host)
        self.assertEqual(host.run(engine), {FetchStatus.ABSORBED: 6})
        self.assertEqual(len(engine.records), 23)

    def test_load_from_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "trace.json"
            path.write_text(json.dumps(LOOP_DOC), encoding="utf-8")
            host = load_trace(str(path))
        self.assertEqual(len(host.program.statements), 4)

    def test_rejects_bad_statements(self):
        with self.assertRaises(ValueError):
            parse_statement({"address": 0, "line": 1, "class": "vector", "operands": [1, 2, 3]})
        with self.assertRaises(ValueError):
            parse_statement({"address": 0, "line": 1, "class": "branch", "operands": [1, 2]})
        with self.assertRaises(ValueError):
            parse_statement({"address": 0, "line": 1, "class": "fused-float", "operands": [1, 2, 3]})
        with self.assertRaises(ValueError):
            parse_trace({"statements": []})

    def test_unsupported_classes_still_load(self):
        instr = parse_statement({"address": 0, "line": 1, "class": "csr", "operands": [5, 1, 0]})
        self.assertIs(instr.iclass, IClass.CSR)

    def test_rewind_entries(self):
        doc = dict(LOOP_DOC, trace=LOOP_DOC["trace"][:2] + [{"rewind": True}] + LOOP_DOC["trace"][1:])
        host = parse_trace(doc)
        engine = ShadowPipeline(host)
        host.run(engine)
        self.assertEqual(engine.statistics().instructions_executed, 6)
        self.assertEqual(len(engine.records), 23)


class OutputTest(unittest.TestCase):
    def test_table_has_header_and_rows(self):
        host = build_workload("sequential", 2)
        engine = ShadowPipeline(host)
        host.run(engine)
        lines = format_table(engine.records).splitlines()
        self.assertEqual(lines[0].split(), ["CYCLE", "IF", "ID/OF", "EX", "MEM", "WB"])
        self.assertEqual(len(lines), 1 + 6)
        self.assertTrue(lines[1].startswith("1"))

    def test_cli_writes_summary_and_events(self):
        with tempfile.TemporaryDirectory() as td:
            events = Path(td) / "events.json"
            summary = Path(td) / "summary.csv"
            rc = main(["--workload", "loop", "--size", "2", "--table",
                       "--events", str(events), "--summary", str(summary)])
            self.assertEqual(rc, 0)
            with open(summary, newline="") as f:
                rows = list(csv.DictReader(f))
            dumped = json.loads(events.read_text())
        self.assertEqual(rows[0]["instructions_executed"], "6")
        self.assertEqual(rows[0]["cycles_taken"], "23")
        self.assertEqual(sum(1 for e in dumped if e["type"] == "tick"), 23)

    def test_cli_reports_bad_trace(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "broken.json"
            path.write_text(json.dumps({"name": "x"}), encoding="utf-8")
            self.assertEqual(main([str(path), "--no-events", "--summary", str(Path(td) / "s.csv")]), 2)


if __name__ == "__main__":
    unittest.main()
