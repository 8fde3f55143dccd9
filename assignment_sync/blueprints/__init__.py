"""
External Assignment Sync
Blueprint registry.
"""

from assignment_sync.blueprints.health_bp import health_bp
from assignment_sync.blueprints.sync_bp import sync_bp

ALL_BLUEPRINTS = (sync_bp, health_bp)
