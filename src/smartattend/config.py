"""
Configuration constants and settings
====================================
Read once from the environment at import time. Runtime tunables (session
lifetime, duplicate window, OTP limits) live in the system_config table.
"""

import os
from pathlib import Path

PACKAGE_DIR = Path(__file__).parent

# Environment
APP_ENV = os.getenv('APP_ENV', 'development').strip().lower()
IS_PRODUCTION = APP_ENV == 'production'

# Database
DATABASE_URL = os.getenv('DATABASE_URL', f"sqlite:///{PACKAGE_DIR / 'attendance.db'}")
DATABASE_ECHO = os.getenv('DATABASE_ECHO', '0') == '1'

# Identity matcher (Luxand Cloud)
LUXAND_API_TOKEN = os.getenv('LUXAND_API_TOKEN') or os.getenv('AI_API_KEY')
LUXAND_API_URL = os.getenv('LUXAND_API_URL', 'https://api.luxand.cloud')
LUXAND_COLLECTION = os.getenv('LUXAND_COLLECTION')
MATCHER_TIMEOUT_SECONDS = float(os.getenv('MATCHER_TIMEOUT_SECONDS', '30'))

# Attendance notifications
WEBHOOK_URL = os.getenv('N8N_WEBHOOK_URL')
WEBHOOK_SECRET = os.getenv('N8N_WEBHOOK_SECRET')
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv('WEBHOOK_TIMEOUT_SECONDS', '5'))

# MFA provisioning
TOTP_ISSUER = os.getenv('TOTP_ISSUER', 'SmartAttend')

# HTTP
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', '8000'))
CORS_ORIGINS = [o.strip() for o in os.getenv('CORS_ORIGINS', '*').split(',') if o.strip()]
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Passwordless codes are echoed back to the caller outside production only
EXPOSE_OTP_CODES = not IS_PRODUCTION
