# config/settings.py
"""
Central configuration loader for the RCON admin service

Loads all settings from environment variables with sensible defaults.
"""

from decouple import config
import logging

# ===========================================
# RCON SETTINGS
# ===========================================

# Default timeout for a single RCON command, in seconds
RCON_TIMEOUT = config('RCON_TIMEOUT', default=5.0, cast=float)

# How often each server instance polls status, in seconds
POLL_INTERVAL = config('POLL_INTERVAL', default=30.0, cast=float)

# How often the registry runs a health check over all servers, in seconds
HEALTH_CHECK_INTERVAL = config('HEALTH_CHECK_INTERVAL', default=300.0, cast=float)

# JSON file holding the managed server definitions
SERVERS_FILE = config('SERVERS_FILE', default='servers.json')

# ===========================================
# SECURITY
# ===========================================

# Fernet key (or passphrase) used to decrypt stored RCON passwords
ENCRYPTION_MASTER_KEY = config('ENCRYPTION_MASTER_KEY', default=None)

# ===========================================
# INTEGRATIONS
# ===========================================

# Discord webhook for staff notifications (reports, status changes)
STAFF_WEBHOOK_URL = config('STAFF_WEBHOOK_URL', default=None)

# IP geolocation lookups for connecting players
GEOIP_ENABLED = config('GEOIP_ENABLED', default=False, cast=bool)
GEOIP_API_URL = config('GEOIP_API_URL', default='http://ip-api.com/json/{ip}')
GEOIP_TIMEOUT = config('GEOIP_TIMEOUT', default=5.0, cast=float)

# ===========================================
# LOGGING
# ===========================================
LOG_LEVEL = config('LOG_LEVEL', default='INFO')

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
