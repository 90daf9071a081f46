"""Custom click parameter types."""

from datetime import datetime, timezone

import click


class EpochMillis(click.ParamType):
    """
    Accepts epoch milliseconds, or a date/datetime string (UTC when naive),
    and converts it to epoch milliseconds, the unit events carry on the wire.
    """

    name = "epoch_ms"

    def __init__(self, formats=None):
        super().__init__()
        self.formats = formats or ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"]
        self.datetime_parser = click.DateTime(self.formats)

    def convert(self, value, param, ctx):
        if value is None or isinstance(value, int):
            return value
        if str(value).isdigit():
            return int(value)
        try:
            dt = self.datetime_parser.convert(value, param, ctx)
        except click.exceptions.BadParameter:
            self.fail(
                f"'{value}' is not a valid time. Expected epoch milliseconds "
                f"(e.g., 1700000000000) or one of: {', '.join(self.formats)}.",
                param,
                ctx,
            )
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)


class VariantSpec(click.ParamType):
    """
    Parses ``name:completion_rate:mean_seconds`` into
    ``(name, {"completion": float, "mean_seconds": float})``.
    """

    name = "variant"

    def convert(self, value, param, ctx):
        if isinstance(value, tuple):
            return value
        try:
            name, completion, mean_seconds = value.split(":")
            completion = float(completion)
            mean_seconds = float(mean_seconds)
        except ValueError:
            self.fail(
                f"'{value}' must be in the format 'name:completion_rate:mean_seconds'",
                param,
                ctx,
            )
        if not name.strip() or not 0 <= completion <= 1 or mean_seconds <= 0:
            self.fail(
                f"'{value}': completion_rate must be within [0, 1] and "
                "mean_seconds positive",
                param,
                ctx,
            )
        return name.strip(), {"completion": completion, "mean_seconds": mean_seconds}


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)
