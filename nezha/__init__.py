"""Server-side core of a monitoring dashboard: registries, service monitoring, notifications, task dispatch, agent reports and stream relaying."""

__version__ = "0.1.0"