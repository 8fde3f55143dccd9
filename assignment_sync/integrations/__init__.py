"""assignment_sync.integrations — External platform connector modules.

All outbound HTTP calls to academic platforms must go through a connector
in this package, never via bare `requests` calls in services or blueprints.

Every connector:
  - Registers itself under its source_type via @register_connector
  - Bounds each remote call with the configured timeout
  - Raises only InvalidCredentialsError, RateLimitError or NetworkError

Current connectors:
  canvas_connector.CanvasConnector — Canvas LMS REST API
"""

from assignment_sync.integrations import canvas_connector  # noqa: F401  (registers "Canvas")
