from flask import Flask, request, session, jsonify, g
from functools import wraps
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
import logging

import jwt

from config import Config
import models
import dashboard
import reports

config = Config()
app = Flask(__name__)
app.config['SECRET_KEY'] = config.SECRET_KEY
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_SECURE'] = config.SESSION_COOKIE_SECURE

logger = logging.getLogger(__name__)

DB_TZ = ZoneInfo(config.DB_TIMEZONE)
MAX_REPORT_RANGE_DAYS = 3650


class AuthenticationError(Exception):
    pass


# ========================================
# HELPERS
# ========================================

def parse_positive_int(value, default=None, maximum=None):
    if value is None or str(value).strip() == '':
        return default
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if parsed <= 0 or (maximum is not None and parsed > maximum):
        return None
    return parsed


def parse_bool_arg(value):
    return (value or '').strip().lower() in ('1', 'true', 'yes')


def _coerce_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def decode_bearer_token(token):
    """Verify a bearer token issued by the identity provider and return the caller."""
    try:
        payload = jwt.decode(token, config.AUTH_SECRET, algorithms=[config.AUTH_ALGORITHM])
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f'Invalid token: {e}') from e

    user = payload.get('user') if isinstance(payload.get('user'), dict) else {}
    user_id = user.get('id') or payload.get('sub')
    if not user_id:
        raise AuthenticationError('Token carries no user id')
    role = user.get('role', payload.get('role'))
    return dashboard.Caller(user_id=_coerce_id(user_id), role=_coerce_id(role))


def get_current_caller():
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return decode_bearer_token(auth_header[7:].strip())
    if 'user_id' in session:
        return dashboard.Caller(user_id=session['user_id'], role=_coerce_id(session.get('user_role')))
    raise AuthenticationError('No session or bearer token')


# ========================================
# DECORATORS
# ========================================

def api_login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            g.caller = get_current_caller()
        except AuthenticationError as e:
            logger.info("Rejected request to %s: %s", request.path, e)
            return jsonify({'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not g.caller.is_admin(config.ADMIN_ROLE_IDS):
            return jsonify({'error': 'Forbidden'}), 403
        return f(*args, **kwargs)
    return decorated


# ========================================
# API ENDPOINTS
# ========================================

@app.route('/api/efiling/dashboard/stats')
@api_login_required
def api_dashboard_stats():
    try:
        stats = dashboard.build_dashboard_stats(
            g.caller,
            config.ADMIN_ROLE_IDS,
            now=datetime.now(timezone.utc),
            tz=DB_TZ,
            parallel=config.DASHBOARD_PARALLEL_QUERIES,
            max_workers=config.DASHBOARD_MAX_WORKERS,
        )
    except Exception as e:
        logger.exception("Error fetching dashboard stats for user %s", g.caller.user_id)
        return jsonify({
            'error': 'Failed to fetch dashboard statistics',
            'details': getattr(e, 'details', None) or str(e),
        }), 500
    return jsonify(stats)


@app.route('/api/efiling/reports/department-performance')
@api_login_required
@admin_required
def api_department_performance():
    date_range = parse_positive_int(request.args.get('dateRange'), default=30, maximum=MAX_REPORT_RANGE_DAYS)
    if date_range is None:
        return jsonify({'error': f'dateRange must be a whole number of days between 1 and {MAX_REPORT_RANGE_DAYS}'}), 400
    include_inactive = parse_bool_arg(request.args.get('includeInactive'))
    try:
        result = reports.build_department_performance(date_range, include_inactive, datetime.now(timezone.utc))
    except Exception as e:
        logger.exception("Error fetching department performance")
        return jsonify({
            'error': 'Failed to fetch department performance data',
            'details': getattr(e, 'details', None) or str(e),
        }), 500
    return jsonify(result)


@app.route('/healthz')
def healthz():
    if models.check_database():
        return jsonify({'status': 'ok', 'database': 'ok'}), 200
    return jsonify({'status': 'degraded', 'database': 'unavailable'}), 503

# ========================================
# RUN
# ========================================

if __name__ == '__main__':
    logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app.run(debug=config.DEBUG, host=config.HOST, port=config.PORT)
