"""Log file discovery from a node's logback configuration."""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from diagbundle.core.models import LogLevel
from diagbundle.core.parsing.log_pattern import DEFAULT_LAYOUT

logger = logging.getLogger(__name__)

ROLLING_FILE_APPENDER = "ch.qos.logback.core.rolling.RollingFileAppender"

# Used when no appender of the configuration points at a usable file
WELL_KNOWN_LOG_FILES = re.compile(r"application\.log.*|system\.log.*|stdout.*|cassandra_0\.log.*")


@dataclass(frozen=True)
class LogbackAppender:
    """One appender of a logback configuration.

    Attributes:
        name: Appender name attribute.
        appender_class: Fully qualified appender class.
        file_patterns: Text of the appender's ``file`` elements.
        max_level: The higher of the root logger level and the filter level.
        encoder_pattern: Layout of the encoder.
    """

    name: str
    appender_class: str
    file_patterns: tuple[str, ...]
    max_level: LogLevel
    encoder_pattern: str = DEFAULT_LAYOUT

    @property
    def file_name(self) -> str | None:
        """Base name of the first file pattern."""
        if not self.file_patterns:
            return None
        return self.file_patterns[0].rsplit("/", 1)[-1]


DEFAULT_APPENDER = LogbackAppender(
    name="SYSTEMLOG",
    appender_class=ROLLING_FILE_APPENDER,
    file_patterns=("${cassandra.logdir}/system.log",),
    max_level=LogLevel.INFO,
)


def _text(element: ET.Element | None, default: str) -> str:
    if element is None or element.text is None:
        return default
    return element.text.strip()


def parse_logback(text: str | None) -> list[LogbackAppender]:
    """Parse the appenders of a logback configuration.

    Args:
        text: Content of logback.xml; None or blank selects the default
            system.log appender.

    Returns:
        Appenders in document order.
    """
    if text is None or not text.strip():
        return [DEFAULT_APPENDER]
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        logger.warning(f"Unable to parse logback configuration: {e}, using defaults")
        return [DEFAULT_APPENDER]

    root_logger = root.find("root")
    root_level = LogLevel.parse(
        root_logger.get("level") if root_logger is not None else None, LogLevel.INFO
    )

    appenders = []
    for element in root.findall("appender"):
        filter_level = LogLevel.parse(_text(element.find("filter/level"), "INFO"), LogLevel.INFO)
        appenders.append(
            LogbackAppender(
                name=element.get("name", ""),
                appender_class=element.get("class", ""),
                file_patterns=tuple(_text(f, "") for f in element.findall("file")),
                max_level=max(root_level, filter_level),
                encoder_pattern=_text(element.find("encoder/pattern"), DEFAULT_LAYOUT),
            )
        )
    return appenders


def select_appender(appenders: list[LogbackAppender]) -> LogbackAppender:
    """Pick the rolling file appender to read logs from.

    Only appenders logging at WARN or finer qualify; the one with the
    highest level is preferred since it usually keeps the longest history.
    """
    candidates = [
        a
        for a in appenders
        if a.appender_class == ROLLING_FILE_APPENDER
        and a.max_level <= LogLevel.WARN
        and a.file_patterns
    ]
    if not candidates:
        return DEFAULT_APPENDER
    return max(candidates, key=lambda a: a.max_level)


def find_logback_config(node_dir: Path) -> str | None:
    """Return the content of the node's logback.xml, if any."""
    conf_dir = node_dir / "conf"
    if not conf_dir.is_dir():
        return None
    for path in sorted(conf_dir.rglob("logback.xml")):
        if path.is_file():
            return path.read_text(encoding="utf-8", errors="replace")
    return None


def _files_matching(directory: Path, pattern: re.Pattern[str]) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob("*") if p.is_file() and pattern.fullmatch(p.name))


def find_log_files(node_dir: Path) -> tuple[list[Path], LogbackAppender]:
    """Find the log files of a node and the appender that wrote them.

    Files named after the selected appender's file (including rolled
    copies) are searched under ``logs/``; well-known log names are the
    fallback.

    Returns:
        (log files, appender whose encoder layout applies to them).
    """
    appender = select_appender(parse_logback(find_logback_config(node_dir)))
    logs_dir = node_dir / "logs"
    files: list[Path] = []
    if appender.file_name:
        files = _files_matching(logs_dir, re.compile(re.escape(appender.file_name) + ".*"))
    if not files:
        files = _files_matching(logs_dir, WELL_KNOWN_LOG_FILES)
    logger.debug(f"Found {len(files)} log files in {logs_dir} for appender {appender.name}")
    return files, appender
