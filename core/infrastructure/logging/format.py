from typing import Any, Dict

LEVEL_COLORS = {
    "CRITICAL": "<red>",
    "DEBUG": "<white>",
    "ERROR": "<magenta>",
    "INFO": "<blue>",
    "SUCCESS": "<green>",
    "TRACE": "<dim>",
    "WARNING": "<yellow>",
}

CONSOLE_CONTEXT_KEYS = ("tenant_id", "cadence")


class CustomLogFormat:
    """Manage custom log formatting for console and file outputs.

    Takes a Loguru record dictionary and formats it into human-readable
    strings. Console lines carry the tenant and scheduler cadence when a
    logging context provides them; file lines carry the whole context.
    """

    def __init__(self, record: Dict[str, Any]) -> None:
        self.record = record
        self.time_str = self.record["time"].strftime("%Y-%m-%d %H:%M:%S.%f")[:-4]
        self.level = self.record["level"].name
        self.level_color = LEVEL_COLORS.get(self.level, "<white>")
        self.level_close = f"</{self.level_color.strip('<>')}>"

        function = self.record["function"]
        if function == "<module>":
            function = "\\<module\\>"
        self.location = f"{self.record['name']}:{function}:{self.record['line']}"

    def _escape(self, value: Any) -> str:
        return str(value).replace("{", "{{").replace("}", "}}").replace("<", "\\<")

    def _prefix(self) -> str:
        return (
            f"<dim><bold>{self.time_str}</bold></dim> | "
            f"<level>{self.level_color}{self.level:8}{self.level_close}</level> | "
            f"<cyan>{self.location}</cyan> - "
        )

    def log_console_format(self) -> str:
        """Format the log record for console output.

        Returns
        -------
        str
            Formatted string suitable for console logging.
        """
        extra = self.record["extra"]
        tags = "".join(
            f"[{self._escape(extra[key])}] " for key in CONSOLE_CONTEXT_KEYS if extra.get(key)
        )

        return (
            self._prefix()
            + f"<magenta>{tags}</magenta>"
            + f"<level>{self.level_color}{self._escape(self.record['message'])}{self.level_close}</level>"
            + "\n{exception}"
        )

    def log_file_format(self) -> str:
        """Format the log record for file output.

        Includes every context value (request id, tenant, cadence, ...) after
        the message.

        Returns
        -------
        str
            Formatted string suitable for file logging.
        """
        context_parts = [
            f"{key}={self._escape(value)}" for key, value in self.record["extra"].items()
        ]
        context_string = f" | {', '.join(context_parts)}" if context_parts else ""

        return (
            self._prefix()
            + f"<level>{self.level_color}{self._escape(self.record['message'])}{self.level_close}</level>"
            + f"<bold><dim>{context_string}</dim></bold>"
            + "\n{exception}"
        )
