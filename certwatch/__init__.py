"""Certificate transparency feed ingestion, rule matching, alert outputs, Slack notification and metrics."""

__version__ = "0.1.0"