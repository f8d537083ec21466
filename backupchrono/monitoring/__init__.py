"""
Monitoring and health check functionality
"""

from backupchrono.monitoring.health_server import HealthCheckHandler, HealthServer

__all__ = ["HealthServer", "HealthCheckHandler"]
