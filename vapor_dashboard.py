import json

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import streamlit as st

from vapor_pipeline import STAGE_NAMES, Config, ShadowPipeline
from vapor_simulator import WORKLOADS, build_workload, parse_trace

TAG_COLORS = {"control": "#ffff00", "data": "#00ffff", "both": "#00ff00"}
REGION_COLOR = "#404040"

def occupancy(records):
    """Fraction of cycles each stage held an instruction."""
    if not records:
        return np.zeros(len(STAGE_NAMES))
    filled = np.array([[s is not None for s in r.state.slots] for r in records], dtype=float)
    return filled.mean(axis=0)

def speedup_curve(engine):
    # cumulative speedup after each absorbed instruction, from the stats events
    stats = engine.eventer.of_type("stats")
    return np.array([e["speedup"] for e in stats]), np.array([e["ideal_speedup"] for e in stats])

def style_row(rec):
    styles = ["background-color: lightgray" if not rec.region_start
              else f"background-color: {REGION_COLOR}; color: white"]
    for tag in rec.tags():
        styles.append(f"background-color: {TAG_COLORS[tag]}" if tag else "")
    return styles

# ---- Sidebar: Config Inputs ----
st.sidebar.title("VAPOR Configuration")

workload = st.sidebar.selectbox("Workload", sorted(WORKLOADS), index=sorted(WORKLOADS).index("loop"))
size = st.sidebar.slider("Size (sequential / loop)", 1, 32, 4)
failsafe_factor = st.sidebar.slider("Failsafe factor", 1, 6, 3)
uploaded = st.sidebar.file_uploader("Or upload a trace document", type=["json"])

# ---- Run Replay Button ----
if st.button("Run Replay"):
    try:
        host = parse_trace(json.load(uploaded)) if uploaded is not None else build_workload(workload, size)
    except ValueError as e:
        st.error(f"Could not load trace: {e}")
        st.stop()

    cfg = Config(failsafe_factor=failsafe_factor)
    engine = ShadowPipeline(host, cfg)
    host.run(engine)
    stats = engine.statistics()

    st.subheader(f"Pipeline: {host.program.name}")
    st.write(f"**Instructions executed:** {stats.instructions_executed}")
    st.write(f"**Cycles:** {stats.cycles_taken}")
    st.write(f"**Speedup:** {stats.speedup:.2f}")
    st.write(f"**Speedup without hazards:** {stats.ideal_speedup:.2f}")
    for evt in engine.eventer.of_type("desync"):
        st.warning(f"VAPOR: could not predict pipeline (expected {evt['expected']})")

    table = [{"CYCLE": r.cycle, **dict(zip(STAGE_NAMES, r.cells()))} for r in engine.records]
    if table:
        df = pd.DataFrame(table)
        by_cycle = {r.cycle: r for r in engine.records}
        st.dataframe(df.style.apply(lambda row: style_row(by_cycle[row["CYCLE"]]), axis=1),
                     use_container_width=True)

    # ---- Graphs ----
    st.subheader("Speedup Over Time")
    actual, ideal = speedup_curve(engine)
    fig, ax = plt.subplots()
    ax.plot(np.arange(1, len(actual) + 1), actual, marker='o', label="speedup")
    ax.plot(np.arange(1, len(ideal) + 1), ideal, linestyle='--', label="without hazards")
    ax.set_xlabel("Instruction")
    ax.set_ylabel("Speedup")
    ax.legend()
    st.pyplot(fig)

    st.subheader("Stage Occupancy")
    fig2, ax2 = plt.subplots()
    ax2.bar(STAGE_NAMES, occupancy(engine.records) * 100)
    ax2.set_ylim(0, 100)
    ax2.set_ylabel("Occupied cycles (%)")
    st.pyplot(fig2)

else:
    st.info("Pick a workload or upload a trace on the left, then click **Run Replay**")
