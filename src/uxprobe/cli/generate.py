"""CLI commands for generating synthetic session traffic."""

import json
import uuid
from typing import Dict, List, Optional

import click
import numpy as np

from uxprobe.cli.cli_types import EpochMillis, VariantSpec, now_ms


def generate_session_events(
    test_id: str,
    variants: Dict[str, Dict[str, float]],
    num_sessions: int,
    start_ms: int,
    error_rate: float = 0.1,
    rng: Optional[np.random.Generator] = None,
) -> List[dict]:
    """
    Simulates tester sessions as SDK event batches.

    Parameters
    ----------
    test_id : str
        Test the sessions belong to.
    variants : dict
        Variant name -> {"completion": probability, "mean_seconds": float}.
    num_sessions : int
        Number of sessions to simulate; variants are assigned uniformly.
    start_ms : int
        Client time of the first session, epoch milliseconds.
    error_rate : float, optional
        Probability that a session logs one validation error.
    rng : np.random.Generator, optional
        Source of randomness, for reproducible output.

    Returns
    -------
    list of dict
        Events in wire format, ordered per session.
    """
    rng = rng or np.random.default_rng()
    names = list(variants)
    clock = start_ms
    events = []

    for _ in range(num_sessions):
        variant = names[rng.integers(len(names))]
        params = variants[variant]
        session_id = str(uuid.UUID(bytes=rng.bytes(16), version=4))
        duration = int(rng.exponential(params["mean_seconds"]) * 1000) + 1000
        base = {"sessionId": session_id, "testId": test_id, "variant": variant}

        events.append(
            {**base, "type": "test_started", "timestamp": clock,
             "payload": {"url": "https://example.com"}}
        )
        events.append(
            {**base, "type": "task_started", "timestamp": clock + 1,
             "payload": {"taskIndex": 0}}
        )
        if rng.random() < error_rate:
            events.append(
                {**base, "type": "validation_error", "timestamp": clock + duration // 2,
                 "payload": {"field": "email"}}
            )
        if rng.random() < params["completion"]:
            events.append(
                {**base, "type": "test_completed", "timestamp": clock + duration,
                 "duration": duration}
            )
        else:
            events.append(
                {**base, "type": "test_abandoned", "timestamp": clock + duration,
                 "duration": duration, "payload": {"reason": "user_abandoned"}}
            )
        clock += int(rng.integers(1_000, 60_000))

    return events


@click.group("generate")
def generate_cli():
    """Generate synthetic data for local testing."""
    pass


@generate_cli.command("sessions")
@click.option("--test-id", required=True, help="Test the sessions belong to.")
@click.option("--num-sessions", "-n", default=50, help="Number of sessions.")
@click.option(
    "--variant",
    "variant_specs",
    type=VariantSpec(),
    multiple=True,
    default=["A:0.7:45", "B:0.8:35"],
    help="Variant in name:completion_rate:mean_seconds format. "
    "Can be specified multiple times.",
)
@click.option("--error-rate", default=0.1, help="Chance of a validation error.")
@click.option(
    "--start",
    type=EpochMillis(),
    default=None,
    help="Client time of the first session (defaults to now).",
)
@click.option("--seed", type=int, default=None, help="Random seed.")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Output file path (defaults to stdout).",
)
def generate_sessions(
    test_id: str,
    num_sessions: int,
    variant_specs: tuple,
    error_rate: float,
    start: Optional[int],
    seed: Optional[int],
    output: Optional[str],
):
    """Generate an event batch for simulated sessions, ready for `events upload`."""
    events = generate_session_events(
        test_id=test_id,
        variants=dict(variant_specs),
        num_sessions=num_sessions,
        start_ms=start if start is not None else now_ms(),
        error_rate=error_rate,
        rng=np.random.default_rng(seed),
    )
    body = json.dumps({"events": events}, indent=2)
    if output is None:
        click.echo(body)
        return

    with open(output, "w") as f:
        f.write(body)
    click.echo(
        f"Successfully generated {len(events)} events for {num_sessions} "
        f"sessions to {output}",
        err=True,
    )
