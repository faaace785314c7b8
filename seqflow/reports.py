# File: seqflow/reports.py
# Location: seqflow/seqflow/reports.py

"""
Run-level reports written to ``<outdir>/pipeline_info``.

- ``execution_trace.txt``: one tab separated row per task attempt
- ``execution_report.html``: run status, per-status counts, per-task summary
  and failed instances
- ``execution_timeline.html``: one bar per attempt on the run time axis
- ``pipeline_dag.dot``: the task graph in Graphviz format
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List

import pandas as pd
from jinja2 import Environment, FileSystemLoader

from .pipeline_core.resources import format_duration

if TYPE_CHECKING:
    from .pipeline_core.context import RunContext
    from .pipeline_core.graph import PipelineGraph
    from .pipeline_core.runner import RunResult

logger = logging.getLogger("seqflow")

TRACE_FILENAME = "execution_trace.txt"
REPORT_FILENAME = "execution_report.html"
TIMELINE_FILENAME = "execution_timeline.html"
DAG_FILENAME = "pipeline_dag.dot"

TRACE_COLUMNS = [
    "task_id",
    "hash",
    "native_id",
    "process",
    "name",
    "tag",
    "status",
    "exit",
    "attempt",
    "cpus",
    "memory",
    "time",
    "submit",
    "start",
    "complete",
    "realtime",
    "workdir",
]

_TIMESTAMP_COLUMNS = ("submit", "start", "complete")


def _template_env() -> Environment:
    templates_dir = Path(__file__).parent / "templates"
    if not templates_dir.exists():
        raise FileNotFoundError(f"Templates directory not found at: {templates_dir}")
    return Environment(loader=FileSystemLoader(str(templates_dir)), autoescape=True)


def trace_dataframe(trace: List[Dict[str, Any]]) -> pd.DataFrame:
    """Build the trace table (one row per attempt) with stable columns."""
    df = pd.DataFrame(trace, columns=TRACE_COLUMNS)
    for column in (*_TIMESTAMP_COLUMNS, "realtime"):
        df[column] = df[column].astype(float)
    df["exit"] = df["exit"].astype(float).astype("Int64")
    return df


def format_trace(df: pd.DataFrame) -> pd.DataFrame:
    """Human readable copy of the trace: ISO timestamps and formatted durations."""
    formatted = df.copy()
    for column in _TIMESTAMP_COLUMNS:
        formatted[column] = formatted[column].map(
            lambda t: datetime.fromtimestamp(t).isoformat(sep=" ", timespec="milliseconds")
            if pd.notna(t)
            else None
        )
    formatted["time"] = formatted["time"].map(lambda s: format_duration(s) if pd.notna(s) else None)
    formatted["realtime"] = formatted["realtime"].map(
        lambda s: f"{s:.1f}s" if pd.notna(s) else None
    )
    return formatted


def write_trace(df: pd.DataFrame, path: Path) -> Path:
    """Write the trace as a tab separated file; missing values are written as ``-``."""
    format_trace(df).to_csv(path, sep="\t", index=False, na_rep="-")
    logger.debug(f"Trace written to {path}")
    return path


def task_summary(df: pd.DataFrame) -> pd.DataFrame:
    """
    Aggregate the trace per task.

    Returns
    -------
    pd.DataFrame
        One row per process with attempt counts per status, the number of
        retried attempts and the mean/max real time of the attempts.
    """
    if df.empty:
        return pd.DataFrame(
            columns=["process", "attempts", "succeeded", "failed", "retried", "mean_realtime", "max_realtime"]
        )
    grouped = df.groupby("process", sort=False)
    summary = pd.DataFrame(
        {
            "attempts": grouped.size(),
            "succeeded": grouped["status"].apply(lambda s: int((s == "succeeded").sum())),
            "failed": grouped["status"].apply(
                lambda s: int(s.isin(["failed-fatal", "ignored", "aborted"]).sum())
            ),
            "retried": grouped["status"].apply(lambda s: int((s == "failed-retryable").sum())),
            "mean_realtime": grouped["realtime"].mean().round(1),
            "max_realtime": grouped["realtime"].max().round(1),
        }
    ).reset_index()
    return summary


def write_execution_report(
    result: "RunResult", context: "RunContext", df: pd.DataFrame, path: Path
) -> Path:
    """Render the HTML execution report."""
    template = _template_env().get_template(REPORT_FILENAME)
    failed = [
        {
            "name": instance.name,
            "attempt": instance.attempt,
            "exit": instance.exit_status,
            "error": str(instance.error) if instance.error else "",
            "workdir": str(instance.workdir) if instance.workdir else "",
        }
        for instance in result.failed_instances
    ]
    html = template.render(
        status="failed" if result.failed else "succeeded",
        started=context.start_time.isoformat(sep=" ", timespec="seconds"),
        duration=format_duration(result.duration),
        outdir=str(context.workspace.output_dir),
        work_dir=str(context.workspace.work_dir),
        error_strategy=context.error_strategy,
        ceiling=str(context.ceiling),
        status_counts=sorted(result.status_counts().items()),
        summary=task_summary(df).to_dict(orient="records"),
        failed=failed,
        stalled=sorted(result.stalled.items()),
        versions=sorted(result.versions.tools().items()),
    )
    path.write_text(html, encoding="utf-8")
    logger.debug(f"Execution report written to {path}")
    return path


def timeline_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Bar positions (percent of the run span) for every attempt that started."""
    started = df.dropna(subset=["start", "complete"])
    if started.empty:
        return []
    origin = started["submit"].fillna(started["start"]).min()
    span = max(started["complete"].max() - origin, 1e-6)
    rows = []
    for record in started.to_dict(orient="records"):
        submit = record["submit"] if pd.notna(record["submit"]) else record["start"]
        rows.append(
            {
                "name": record["name"],
                "status": record["status"],
                "attempt": record["attempt"],
                "wait_offset": round((submit - origin) / span * 100, 3),
                "offset": round((record["start"] - origin) / span * 100, 3),
                "width": round(max(record["complete"] - record["start"], 0) / span * 100, 3),
                "realtime": f"{record['realtime']:.1f}s" if pd.notna(record["realtime"]) else "",
            }
        )
    return rows


def write_timeline(df: pd.DataFrame, path: Path) -> Path:
    """Render the HTML timeline of all attempts."""
    template = _template_env().get_template(TIMELINE_FILENAME)
    path.write_text(template.render(rows=timeline_rows(df)), encoding="utf-8")
    logger.debug(f"Timeline written to {path}")
    return path


def write_reports(graph: "PipelineGraph", result: "RunResult", context: "RunContext") -> Dict[str, Path]:
    """
    Write every run-level report.

    Returns
    -------
    dict
        Report file name -> written path
    """
    workspace = context.workspace
    df = trace_dataframe(result.trace)

    dag_path = workspace.get_report_path(DAG_FILENAME)
    dag_path.write_text(graph.to_dot(), encoding="utf-8")

    paths = {
        DAG_FILENAME: dag_path,
        TRACE_FILENAME: write_trace(df, workspace.get_report_path(TRACE_FILENAME)),
        REPORT_FILENAME: write_execution_report(
            result, context, df, workspace.get_report_path(REPORT_FILENAME)
        ),
        TIMELINE_FILENAME: write_timeline(df, workspace.get_report_path(TIMELINE_FILENAME)),
    }
    logger.info(f"Reports written to {workspace.pipeline_info_dir}")
    return paths
