import os
import re
from pathlib import Path

from dotenv import load_dotenv

_ENV_PATH = Path(__file__).resolve().parent / '.env'
load_dotenv(dotenv_path=_ENV_PATH)


def _env_flag(name, default='0'):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_id_list(raw):
    ids = set()
    for part in (raw or '').split(','):
        part = part.strip()
        if not part:
            continue
        try:
            ids.add(int(part))
        except ValueError:
            raise RuntimeError(f"Invalid role id in ADMIN_ROLE_IDS: {part!r}")
    return frozenset(ids)


class Config:
    def __init__(self):
        self.APP_ENV = os.environ.get('APP_ENV', 'development').strip().lower()
        self.IS_PRODUCTION = self.APP_ENV == 'production'

        self.SECRET_KEY = os.environ.get(
            'SECRET_KEY',
            'dev-only-change-me-before-production'
        )
        # Shared with the identity provider that signs bearer tokens.
        self.AUTH_SECRET = os.environ.get('AUTH_SECRET') or self.SECRET_KEY
        self.AUTH_ALGORITHM = 'HS256'

        # PostgreSQL configuration: supports either DATABASE_URL or host/user/password fields.
        self.DB_HOST = os.environ.get('DB_HOST', 'localhost')
        self.DB_PORT = os.environ.get('DB_PORT', '5432')
        self.DB_NAME = os.environ.get('DB_NAME', 'efiling')
        self.DB_USER = os.environ.get('DB_USER', 'postgres')
        self.DB_PASSWORD = os.environ.get('DB_PASSWORD')
        self.DB_SSLMODE = os.environ.get('DB_SSLMODE', 'prefer')
        self.DB_CONNECT_TIMEOUT = int(os.environ.get('DB_CONNECT_TIMEOUT', '10'))
        self.DB_STATEMENT_TIMEOUT_MS = int(os.environ.get('DB_STATEMENT_TIMEOUT_MS', '120000'))
        self.DB_POOL_MIN = int(os.environ.get('DB_POOL_MIN', '0'))
        self.DB_POOL_MAX = int(os.environ.get('DB_POOL_MAX', '10'))
        # How long a request waits for a free pooled connection before failing.
        self.DB_POOL_WAIT_SECONDS = float(os.environ.get('DB_POOL_WAIT_SECONDS', '30'))
        self.DB_TIMEZONE = os.environ.get('DB_TIMEZONE', 'UTC').strip() or 'UTC'
        self.DB_SCHEMA = os.environ.get('DB_SCHEMA', 'public').strip() or 'public'
        if not re.fullmatch(r'[A-Za-z_][A-Za-z0-9_]*', self.DB_SCHEMA):
            raise RuntimeError(
                "Invalid DB_SCHEMA value. Use a valid PostgreSQL identifier (e.g., public or efiling)."
            )
        if not re.fullmatch(r'[A-Za-z_][A-Za-z0-9_/+\-]*', self.DB_TIMEZONE):
            raise RuntimeError("Invalid DB_TIMEZONE value. Use an IANA zone name such as UTC or Asia/Karachi.")
        if self.DB_POOL_MAX < 1 or self.DB_POOL_MIN < 0 or self.DB_POOL_MIN > self.DB_POOL_MAX:
            raise RuntimeError("DB_POOL_MIN/DB_POOL_MAX must satisfy 0 <= min <= max and max >= 1.")

        # Dashboard behaviour
        self.ADMIN_ROLE_IDS = _parse_id_list(os.environ.get('ADMIN_ROLE_IDS', '1,2'))
        self.DASHBOARD_PARALLEL_QUERIES = _env_flag('DASHBOARD_PARALLEL_QUERIES')
        self.DASHBOARD_MAX_WORKERS = max(1, int(os.environ.get('DASHBOARD_MAX_WORKERS', '4')))
        self.SLOW_QUERY_MS = int(os.environ.get('SLOW_QUERY_MS', '1000'))

        # App runtime configuration
        self.HOST = os.environ.get('HOST', '0.0.0.0')
        self.PORT = int(os.environ.get('PORT', '5000'))
        self.DEBUG = os.environ.get('FLASK_DEBUG', '0') == '1' and not self.IS_PRODUCTION
        self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').strip().upper() or 'INFO'
        self.SESSION_COOKIE_SECURE = self.IS_PRODUCTION

        if self.IS_PRODUCTION:
            self._validate_production_settings()

    def _validate_production_settings(self):
        missing = []
        database_url = os.environ.get('DATABASE_URL')

        if not self.SECRET_KEY or self.SECRET_KEY == 'dev-only-change-me-before-production':
            missing.append('SECRET_KEY')
        if not os.environ.get('AUTH_SECRET'):
            missing.append('AUTH_SECRET')

        if not database_url:
            required_db = {
                'DB_HOST': self.DB_HOST,
                'DB_PORT': self.DB_PORT,
                'DB_NAME': self.DB_NAME,
                'DB_USER': self.DB_USER,
                'DB_PASSWORD': self.DB_PASSWORD,
            }
            for key, value in required_db.items():
                if not value:
                    missing.append(key)

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def _session_options(self):
        return (
            f"-c search_path={self.DB_SCHEMA},public"
            f" -c statement_timeout={self.DB_STATEMENT_TIMEOUT_MS}"
            f" -c timezone={self.DB_TIMEZONE}"
        )

    def get_psycopg2_kwargs(self):
        database_url = os.environ.get('DATABASE_URL')
        options = self._session_options()
        if database_url:
            return {
                'dsn': database_url,
                'connect_timeout': self.DB_CONNECT_TIMEOUT,
                'options': options,
                'application_name': 'efiling-dashboard',
            }

        kwargs = {
            'host': self.DB_HOST,
            'port': self.DB_PORT,
            'dbname': self.DB_NAME,
            'user': self.DB_USER,
            'connect_timeout': self.DB_CONNECT_TIMEOUT,
            'sslmode': self.DB_SSLMODE,
            'options': options,
            'application_name': 'efiling-dashboard',
        }
        if self.DB_PASSWORD is not None:
            kwargs['password'] = self.DB_PASSWORD
        return kwargs
