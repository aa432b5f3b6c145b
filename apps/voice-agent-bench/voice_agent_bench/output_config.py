"""Output format resolution shared by the reporter and the log renderer."""

import os
from enum import Enum
from typing import Literal


class OutputFormat(str, Enum):
    """Console output formats."""
    AUTO = "auto"
    RICH = "rich"
    PLAIN = "plain"
    JSON = "json"


LogFormat = Literal["json", "console", "plain"]

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"


def get_output_format(cli_override: str | None = None) -> OutputFormat:
    """
    Get the output format with priority: CLI parameter > Environment variable > Default (auto).

    Unknown values at either level are ignored and resolution falls through.
    """
    for candidate in (cli_override, os.environ.get(ENV_VAR_NAME)):
        if candidate:
            try:
                return OutputFormat(candidate.lower())
            except ValueError:
                continue
    return OutputFormat.AUTO


def get_log_format(output_format: OutputFormat) -> LogFormat:
    """
    Map an output format to a log renderer:
    - auto/rich -> console (with colors)
    - plain -> plain (no colors)
    - json -> json
    """
    if output_format == OutputFormat.JSON:
        return "json"
    if output_format == OutputFormat.PLAIN:
        return "plain"
    return "console"
