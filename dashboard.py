"""
Dashboard statistics for the e-filing system.

Every statement issued for one request shares a single visibility predicate
and a single ``now`` so that the breakdowns never contradict each other.
"""
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional

import models

logger = logging.getLogger(__name__)

DETAIL_LIMIT = 50
LOCATION_LIMIT = 20
AT_RISK_WINDOW_HOURS = 72
RECENT_ACTIVITY_DAYS = 7

WORKFLOW_TEAM_INTERNAL = 'TEAM_INTERNAL'
WORKFLOW_EXTERNAL = 'EXTERNAL'
WORKFLOW_RETURNED = 'RETURNED_TO_CREATOR'

# Checked in order; the first matching rule wins.
LEVEL_RULES = (
    ('prefix', ('EE', 'XEN'), 'Executive Engineer'),
    ('prefix', ('SE',), 'Superintending Engineer'),
    ('prefix', ('CE',), 'Chief Engineer'),
    ('exact', ('COO',), 'Chief Operating Officer'),
    ('exact', ('CEO',), 'Chief Executive Officer'),
    ('prefix', ('CFO',), 'Chief Financial Officer'),
)
LEVEL_OTHER = 'Other'
LEVEL_RANK = {title: rank for rank, (_, _, title) in enumerate(LEVEL_RULES, start=1)}
LEVEL_RANK[LEVEL_OTHER] = len(LEVEL_RULES) + 1

PENDING_ROLE_RULES = (
    ('prefix', ('SE',), 'Waiting for Superintending Engineer approval'),
    ('prefix', ('CE',), 'Waiting for Chief Engineer approval'),
    ('exact', ('COO',), 'Waiting for COO approval'),
    ('exact', ('CEO',), 'Waiting for CEO approval'),
)


@dataclass(frozen=True)
class Caller:
    user_id: object
    role: object = None

    def is_admin(self, admin_role_ids):
        return self.role in admin_role_ids


# ========================================
# VISIBILITY SCOPE
# ========================================

@dataclass(frozen=True)
class VisibilityScope:
    sql: Optional[str]
    params: dict

    @property
    def unrestricted(self):
        return self.sql is None


_SCOPE_FIELDS = (
    ('department_id', 'f.department_id'),
    ('district_id', 'f.district_id'),
    ('town_id', 'f.town_id'),
    ('division_id', 'f.division_id'),
)


def resolve_visibility_scope(is_admin, profile):
    """Build the predicate that limits every dashboard query to what the caller may see.

    Admins see everything. Anyone else sees files in their department or
    location, plus files they created or hold. Fields missing from the
    profile contribute no clause, and a caller without a profile ends up
    with a predicate that matches nothing.
    """
    if is_admin:
        return VisibilityScope(sql=None, params={})

    profile = profile or {}
    clauses = []
    params = {}
    for key, column in _SCOPE_FIELDS:
        value = profile.get(key)
        if value is None:
            continue
        params[f'scope_{key}'] = value
        clauses.append(f'{column} = %(scope_{key})s')

    efiling_user_id = profile.get('id')
    if efiling_user_id is not None:
        params['scope_efiling_user_id'] = efiling_user_id
        clauses.append('f.created_by = %(scope_efiling_user_id)s')
        clauses.append('f.assigned_to = %(scope_efiling_user_id)s')

    if not clauses:
        return VisibilityScope(sql='FALSE', params={})
    return VisibilityScope(sql=' OR '.join(clauses), params=params)


# ========================================
# STATEMENTS
# ========================================

def _where(scope, *conditions):
    clauses = [c for c in (scope.sql,) + conditions if c]
    if not clauses:
        return ''
    return 'WHERE ' + ' AND '.join(f'({c})' for c in clauses)


def _count_when(condition):
    return f'COUNT(CASE WHEN {condition} THEN 1 END)'


DRAFT = "s.code = 'DRAFT'"
IN_PROGRESS = "s.code = 'IN_PROGRESS'"
PENDING_APPROVAL = "s.code = 'PENDING_APPROVAL'"
APPROVED = "s.code = 'APPROVED'"
COMPLETED = "s.code = 'COMPLETED'"
ASSIGNED = 'f.assigned_to IS NOT NULL'
AT_EXTERNAL_LEVEL = f"ws.current_state = '{WORKFLOW_EXTERNAL}'"
RETURNED_TO_CREATOR = f"ws.current_state = '{WORKFLOW_RETURNED}'"
WITHIN_TEAM = 'ws.is_within_team IS TRUE'
OUTSIDE_TEAM = 'ws.is_within_team IS FALSE'
CREATED_RECENTLY = 'f.created_at >= %(activity_since)s'

# A file with a deadline is breached, or else past due (deadline <= now), or else on track.
HAS_SLA = 'f.sla_deadline IS NOT NULL'
PAUSED = 'f.sla_paused IS TRUE'
BREACHED = 'f.sla_breached IS TRUE'
NOT_BREACHED = 'f.sla_breached IS NOT TRUE'
DEADLINE_PASSED = 'f.sla_deadline IS NOT NULL AND f.sla_deadline <= %(now)s'
DEADLINE_AHEAD = 'f.sla_deadline IS NOT NULL AND f.sla_deadline > %(now)s'
PAST_DUE_UNBREACHED = f'{DEADLINE_PASSED} AND {NOT_BREACHED}'
ON_TRACK = f'{DEADLINE_AHEAD} AND {NOT_BREACHED}'
OVERDUE = f"{BREACHED} OR ({DEADLINE_PASSED} AND s.code <> 'COMPLETED')"
WITHIN_RISK_WINDOW = 'f.sla_deadline < %(at_risk_until)s'
HOURS_TO_DEADLINE = 'EXTRACT(EPOCH FROM (f.sla_deadline - %(now)s)) / 3600'

FILE_STATUS_JOIN = 'LEFT JOIN efiling_file_status s ON f.status_id = s.id'
WORKFLOW_JOIN = 'LEFT JOIN efiling_file_workflow_states ws ON f.workflow_state_id = ws.id'
ASSIGNEE_JOINS = """
            LEFT JOIN efiling_users eu ON f.assigned_to = eu.id
            LEFT JOIN efiling_roles r ON eu.efiling_role_id = r.id"""
DETAIL_LOCATION_JOINS = """
            LEFT JOIN efiling_departments d ON f.department_id = d.id
            LEFT JOIN town t ON f.town_id = t.id
            LEFT JOIN divisions div ON f.division_id = div.id"""
ASSIGNEE_COLUMNS = """
                f.assigned_to,
                eu.designation AS assigned_to_designation,
                r.name AS assigned_to_role,
                r.code AS assigned_to_role_code,"""
LOCATION_COLUMNS = """
                d.name AS department,
                t.town AS town,
                div.name AS division"""


def _overall_sql(scope):
    return f"""
            SELECT
                COUNT(*) AS total_files,
                {_count_when(DRAFT)} AS draft_files,
                {_count_when(IN_PROGRESS)} AS in_progress_files,
                {_count_when(PENDING_APPROVAL)} AS pending_approval_files,
                {_count_when(APPROVED)} AS approved_files,
                {_count_when(COMPLETED)} AS completed_files,
                {_count_when(BREACHED)} AS overdue_files,
                {_count_when(PAST_DUE_UNBREACHED)} AS at_risk_files
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            {_where(scope)}
        """


def _workflow_state_sql(scope):
    return f"""
            SELECT
                COALESCE(ws.current_state, '{WORKFLOW_TEAM_INTERNAL}') AS state,
                COUNT(*) AS count
            FROM efiling_files f
            {WORKFLOW_JOIN}
            {_where(scope)}
            GROUP BY COALESCE(ws.current_state, '{WORKFLOW_TEAM_INTERNAL}')
            ORDER BY count DESC
        """


def _department_sql(scope):
    return f"""
            SELECT
                d.id,
                d.name,
                d.department_type AS type,
                COUNT(*) AS total,
                {_count_when(IN_PROGRESS)} AS in_progress,
                {_count_when(BREACHED)} AS overdue
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            JOIN efiling_departments d ON f.department_id = d.id
            {_where(scope)}
            GROUP BY d.id, d.name, d.department_type
            ORDER BY total DESC
        """


def _town_sql(scope):
    return f"""
            SELECT
                t.id,
                t.town AS town_name,
                dist.title AS district_name,
                COUNT(*) AS total,
                {_count_when(IN_PROGRESS)} AS in_progress
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            LEFT JOIN efiling_users creator ON f.created_by = creator.id
            JOIN town t ON COALESCE(f.town_id, creator.town_id) = t.id
            LEFT JOIN district dist ON t.district_id = dist.id
            {_where(scope)}
            GROUP BY t.id, t.town, dist.title
            ORDER BY total DESC
            LIMIT {LOCATION_LIMIT}
        """


def _division_sql(scope):
    return f"""
            SELECT
                div.id,
                div.name AS division_name,
                div.code AS division_code,
                COUNT(*) AS total,
                {_count_when(IN_PROGRESS)} AS in_progress
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            LEFT JOIN efiling_users creator ON f.created_by = creator.id
            JOIN divisions div ON COALESCE(f.division_id, creator.division_id) = div.id
            {_where(scope)}
            GROUP BY div.id, div.name, div.code
            ORDER BY total DESC
            LIMIT {LOCATION_LIMIT}
        """


def _district_sql(scope):
    return f"""
            SELECT
                dist.id,
                dist.title AS district_name,
                COUNT(*) AS total,
                {_count_when(IN_PROGRESS)} AS in_progress
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            LEFT JOIN efiling_users creator ON f.created_by = creator.id
            LEFT JOIN town t ON COALESCE(f.town_id, creator.town_id) = t.id
            JOIN district dist ON COALESCE(f.district_id, t.district_id, creator.district_id) = dist.id
            {_where(scope)}
            GROUP BY dist.id, dist.title
            ORDER BY total DESC
        """


def _role_level_sql(scope):
    return f"""
            SELECT
                r.id,
                r.name AS role_name,
                r.code AS role_code,
                COUNT(*) AS total,
                {_count_when(IN_PROGRESS)} AS in_progress,
                {_count_when(AT_EXTERNAL_LEVEL)} AS at_external_level
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            {WORKFLOW_JOIN}{ASSIGNEE_JOINS}
            {_where(scope, ASSIGNED)}
            GROUP BY r.id, r.name, r.code
            ORDER BY total DESC
        """


def _status_sql(scope):
    return f"""
            SELECT
                s.id,
                s.name AS status_name,
                s.code AS status_code,
                s.color,
                COUNT(*) AS count
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            {_where(scope)}
            GROUP BY s.id, s.name, s.code, s.color
            ORDER BY count DESC
        """


def _priority_sql(scope):
    return f"""
            SELECT
                COALESCE(f.priority, 'normal') AS priority,
                COUNT(*) AS count
            FROM efiling_files f
            {_where(scope)}
            GROUP BY COALESCE(f.priority, 'normal')
            ORDER BY count DESC
        """


def _category_sql(scope):
    return f"""
            SELECT
                c.id,
                c.name AS category_name,
                c.code AS category_code,
                COUNT(*) AS count
            FROM efiling_files f
            LEFT JOIN efiling_file_categories c ON f.category_id = c.id
            {_where(scope)}
            GROUP BY c.id, c.name, c.code
            ORDER BY count DESC
            LIMIT {LOCATION_LIMIT}
        """


def _recent_activity_sql(scope):
    return f"""
            SELECT
                DATE(f.created_at) AS date,
                COUNT(*) AS files_created
            FROM efiling_files f
            {_where(scope, CREATED_RECENTLY)}
            GROUP BY DATE(f.created_at)
            ORDER BY date DESC
        """


def _workflow_details_sql(scope):
    return f"""
            SELECT
                COALESCE(ws.current_state, '{WORKFLOW_TEAM_INTERNAL}') AS workflow_state,
                COUNT(*) AS total,
                {_count_when(IN_PROGRESS)} AS in_progress,
                {_count_when(WITHIN_TEAM)} AS within_team,
                {_count_when(OUTSIDE_TEAM)} AS external,
                {_count_when(RETURNED_TO_CREATOR)} AS returned_to_creator
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            {WORKFLOW_JOIN}
            {_where(scope)}
            GROUP BY COALESCE(ws.current_state, '{WORKFLOW_TEAM_INTERNAL}')
            ORDER BY total DESC
        """


def _sla_sql(scope):
    return f"""
            SELECT
                {_count_when(HAS_SLA)} AS files_with_sla,
                {_count_when(BREACHED)} AS breached,
                {_count_when(ON_TRACK)} AS on_track,
                {_count_when(PAUSED)} AS paused,
                AVG(CASE WHEN {HAS_SLA} AND {NOT_BREACHED} THEN {HOURS_TO_DEADLINE} END) AS avg_hours_remaining
            FROM efiling_files f
            {_where(scope)}
        """


def _in_progress_detail_sql(scope):
    return f"""
            SELECT
                f.id,
                f.file_number,
                f.subject,
                s.code AS status_code,{ASSIGNEE_COLUMNS}
                ws.current_state AS workflow_state,{LOCATION_COLUMNS},
                f.sla_deadline,
                f.sla_breached
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            {WORKFLOW_JOIN}{ASSIGNEE_JOINS}{DETAIL_LOCATION_JOINS}
            {_where(scope, IN_PROGRESS)}
            ORDER BY f.created_at DESC
            LIMIT {DETAIL_LIMIT}
        """


def _pending_detail_sql(scope):
    return f"""
            SELECT
                f.id,
                f.file_number,
                f.subject,
                s.code AS status_code,{ASSIGNEE_COLUMNS}
                ws.current_state AS workflow_state,{LOCATION_COLUMNS},
                f.sla_deadline,
                f.sla_breached
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            {WORKFLOW_JOIN}{ASSIGNEE_JOINS}{DETAIL_LOCATION_JOINS}
            {_where(scope, PENDING_APPROVAL)}
            ORDER BY f.created_at DESC
            LIMIT {DETAIL_LIMIT}
        """


def _approved_detail_sql(scope):
    return f"""
            SELECT
                f.id,
                f.file_number,
                f.subject,
                s.code AS status_code,
                ds.user_name AS approved_by_name,
                ds.user_designation AS approved_by_designation,
                ds.timestamp AS approved_at,{LOCATION_COLUMNS}
            FROM efiling_files f
            {FILE_STATUS_JOIN}
            LEFT JOIN LATERAL (
                SELECT user_name, user_designation, timestamp
                FROM efiling_document_signatures
                WHERE file_id = f.id AND is_active = true
                ORDER BY timestamp DESC
                LIMIT 1
            ) ds ON true{DETAIL_LOCATION_JOINS}
            {_where(scope, APPROVED)}
            ORDER BY ds.timestamp DESC NULLS LAST, f.id DESC
            LIMIT {DETAIL_LIMIT}
        """


def _overdue_detail_sql(scope):
    return f"""
            SELECT
                f.id,
                f.file_number,
                f.subject,
                s.code AS status_code,{ASSIGNEE_COLUMNS}{LOCATION_COLUMNS},
                f.sla_deadline
            FROM efiling_files f
            {FILE_STATUS_JOIN}{ASSIGNEE_JOINS}{DETAIL_LOCATION_JOINS}
            {_where(scope, OVERDUE)}
            ORDER BY f.sla_deadline ASC NULLS LAST
            LIMIT {DETAIL_LIMIT}
        """


def _at_risk_detail_sql(scope):
    return f"""
            SELECT
                f.id,
                f.file_number,
                f.subject,
                s.code AS status_code,{ASSIGNEE_COLUMNS}{LOCATION_COLUMNS},
                f.sla_deadline
            FROM efiling_files f
            {FILE_STATUS_JOIN}{ASSIGNEE_JOINS}{DETAIL_LOCATION_JOINS}
            {_where(scope, DEADLINE_AHEAD, NOT_BREACHED, WITHIN_RISK_WINDOW)}
            ORDER BY f.sla_deadline ASC
            LIMIT {DETAIL_LIMIT}
        """


STATEMENTS = (
    ('overall', _overall_sql),
    ('by_workflow_state', _workflow_state_sql),
    ('by_department', _department_sql),
    ('by_town', _town_sql),
    ('by_division', _division_sql),
    ('by_district', _district_sql),
    ('by_role_level', _role_level_sql),
    ('by_status', _status_sql),
    ('by_priority', _priority_sql),
    ('by_category', _category_sql),
    ('recent_activity', _recent_activity_sql),
    ('workflow_details', _workflow_details_sql),
    ('sla', _sla_sql),
    ('detail_in_progress', _in_progress_detail_sql),
    ('detail_pending', _pending_detail_sql),
    ('detail_approved', _approved_detail_sql),
    ('detail_overdue', _overdue_detail_sql),
    ('detail_at_risk', _at_risk_detail_sql),
)


def query_params(scope, now, tz=timezone.utc):
    params = dict(scope.params)
    params['now'] = now
    params['at_risk_until'] = now + timedelta(hours=AT_RISK_WINDOW_HOURS)
    # Activity is grouped by DATE(created_at) in the session timezone, so the window starts at local midnight.
    activity_day = now.astimezone(tz).date() - timedelta(days=RECENT_ACTIVITY_DAYS)
    params['activity_since'] = datetime.combine(activity_day, time.min, tzinfo=tz)
    return params


def collect_dashboard_rows(scope, now, parallel=False, max_workers=4, tz=timezone.utc):
    """Run every statement and return ``{name: rows}``.

    Sequentially all statements share one pooled connection; in parallel
    mode each statement checks out its own.
    """
    params = query_params(scope, now, tz)
    statements = [(name, build(scope)) for name, build in STATEMENTS]

    if not parallel:
        with models.db_connection() as conn:
            return {name: models.run_query(conn, name, sql, params) for name, sql in statements}

    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='dashboard-query')
    try:
        futures = [(name, executor.submit(models.fetch_all, name, sql, params)) for name, sql in statements]
        return {name: future.result() for name, future in futures}
    finally:
        executor.shutdown(wait=True, cancel_futures=True)


# ========================================
# CLASSIFICATION RULES
# ========================================

def _matches(code, kind, patterns):
    if kind == 'exact':
        return code in patterns
    return any(code.startswith(p) for p in patterns)


def classify_level(role_code):
    code = role_code or ''
    for kind, patterns, title in LEVEL_RULES:
        if _matches(code, kind, patterns):
            return title
    return LEVEL_OTHER


def pending_reason(workflow_state, assigned_to, role_code):
    if workflow_state == WORKFLOW_EXTERNAL:
        return 'Waiting for external approval'
    if assigned_to is None:
        return 'Not assigned to anyone'
    code = role_code or ''
    for kind, patterns, wording in PENDING_ROLE_RULES:
        if _matches(code, kind, patterns):
            return wording
    return 'Waiting for approval'


def _round_half_up(value):
    return int(math.floor(value + 0.5))


def overdue_reason(sla_deadline, now, tz=timezone.utc):
    """Return ``(hours_overdue, reason)``."""
    if sla_deadline is None:
        return 0.0, 'No SLA deadline set'
    deadline = as_aware(sla_deadline, tz)
    hours = hours_between(now, deadline)
    if deadline <= now:
        return hours, f'SLA deadline passed {_round_half_up(hours)} hours ago'
    # Flagged breached while the deadline is still ahead.
    return hours, 'Within SLA'


def risk_reason(hours_remaining):
    if hours_remaining < 24:
        return 'Less than 24 hours remaining'
    if hours_remaining < 48:
        return 'Less than 48 hours remaining'
    return 'Approaching deadline'


# ========================================
# ROW DECODING
# ========================================

def as_aware(value, tz=timezone.utc):
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


def hours_between(later, earlier):
    return (later - earlier).total_seconds() / 3600


def as_int(value):
    if value is None or value == '':
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.warning("Unexpected count value %r, defaulting to 0", value)
        return 0


def as_float(value):
    if value is None or value == '':
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        logger.warning("Unexpected numeric value %r, defaulting to 0.0", value)
        return 0.0
    return 0.0 if math.isnan(result) else result


def _jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


class _Record:
    """Typed view of one result row: ``int``/``float`` fields are coerced, the rest pass through."""

    @classmethod
    def from_row(cls, row):
        row = row or {}
        values = {}
        for f in fields(cls):
            raw = row.get(f.name)
            if f.type is int:
                raw = as_int(raw)
            elif f.type is float:
                raw = as_float(raw)
            values[f.name] = raw
        return cls(**values)

    def to_dict(self):
        return {f.name: _jsonable(getattr(self, f.name)) for f in fields(self)}


@dataclass
class OverallCounts(_Record):
    total_files: int
    draft_files: int
    in_progress_files: int
    pending_approval_files: int
    approved_files: int
    completed_files: int
    overdue_files: int
    at_risk_files: int


@dataclass
class WorkflowStateCount(_Record):
    state: Optional[str]
    count: int


@dataclass
class DepartmentCount(_Record):
    id: Optional[int]
    name: Optional[str]
    type: Optional[str]
    total: int
    in_progress: int
    overdue: int


@dataclass
class TownCount(_Record):
    id: Optional[int]
    town_name: Optional[str]
    district_name: Optional[str]
    total: int
    in_progress: int


@dataclass
class DivisionCount(_Record):
    id: Optional[int]
    division_name: Optional[str]
    division_code: Optional[str]
    total: int
    in_progress: int


@dataclass
class DistrictCount(_Record):
    id: Optional[int]
    district_name: Optional[str]
    total: int
    in_progress: int


@dataclass
class RoleLevelCount(_Record):
    id: Optional[int]
    role_name: Optional[str]
    role_code: Optional[str]
    total: int
    in_progress: int
    at_external_level: int


@dataclass
class StatusCount(_Record):
    id: Optional[int]
    status_name: Optional[str]
    status_code: Optional[str]
    color: Optional[str]
    count: int


@dataclass
class PriorityCount(_Record):
    priority: Optional[str]
    count: int


@dataclass
class LevelCount(_Record):
    level: str
    total: int
    in_progress: int


@dataclass
class CategoryCount(_Record):
    id: Optional[int]
    category_name: Optional[str]
    category_code: Optional[str]
    count: int


@dataclass
class DailyActivity(_Record):
    date: object
    files_created: int


@dataclass
class WorkflowDetail(_Record):
    workflow_state: Optional[str]
    total: int
    in_progress: int
    within_team: int
    external: int
    returned_to_creator: int


@dataclass
class SlaSummary(_Record):
    files_with_sla: int
    breached: int
    on_track: int
    paused: int
    avg_hours_remaining: float


@dataclass
class InProgressFile(_Record):
    id: Optional[int]
    file_number: Optional[str]
    subject: Optional[str]
    assigned_to_role: Optional[str]
    assigned_to_role_code: Optional[str]
    assigned_to_designation: Optional[str]
    workflow_state: Optional[str]
    department: Optional[str]
    town: Optional[str]
    division: Optional[str]
    sla_deadline: object
    sla_breached: Optional[bool]


@dataclass
class PendingFile(InProgressFile):
    pending_reason: Optional[str] = None


@dataclass
class ApprovedFile(_Record):
    id: Optional[int]
    file_number: Optional[str]
    subject: Optional[str]
    approved_by_name: Optional[str]
    approved_by_designation: Optional[str]
    approved_at: object
    department: Optional[str]
    town: Optional[str]
    division: Optional[str]


@dataclass
class OverdueFile(_Record):
    id: Optional[int]
    file_number: Optional[str]
    subject: Optional[str]
    assigned_to_role: Optional[str]
    assigned_to_role_code: Optional[str]
    assigned_to_designation: Optional[str]
    department: Optional[str]
    town: Optional[str]
    division: Optional[str]
    sla_deadline: object
    hours_overdue: float
    overdue_reason: Optional[str]


@dataclass
class AtRiskFile(_Record):
    id: Optional[int]
    file_number: Optional[str]
    subject: Optional[str]
    assigned_to_role: Optional[str]
    assigned_to_role_code: Optional[str]
    assigned_to_designation: Optional[str]
    department: Optional[str]
    town: Optional[str]
    division: Optional[str]
    sla_deadline: object
    hours_remaining: float
    risk_reason: Optional[str]


def summarize_levels(role_rows):
    """Fold per-role counts into seniority tiers, most junior first."""
    levels = {}
    for row in role_rows:
        title = classify_level(row.role_code)
        bucket = levels.setdefault(title, LevelCount(level=title, total=0, in_progress=0))
        bucket.total += row.total
        bucket.in_progress += row.in_progress
    return sorted(levels.values(), key=lambda bucket: LEVEL_RANK[bucket.level])


def _decode_pending(row):
    item = PendingFile.from_row(row)
    item.pending_reason = pending_reason(item.workflow_state, row.get('assigned_to'), item.assigned_to_role_code)
    return item


def _decode_overdue(row, now, tz):
    item = OverdueFile.from_row(row)
    item.hours_overdue, item.overdue_reason = overdue_reason(item.sla_deadline, now, tz)
    return item


def _decode_at_risk(row, now, tz):
    item = AtRiskFile.from_row(row)
    if item.sla_deadline is not None:
        item.hours_remaining = hours_between(as_aware(item.sla_deadline, tz), now)
    item.risk_reason = risk_reason(item.hours_remaining)
    return item


def _dicts(records):
    return [record.to_dict() for record in records]


def assemble_dashboard(rows, now, tz=timezone.utc):
    """Turn the raw result sets into the response document."""
    def result(name):
        return rows.get(name) or []

    overall = result('overall')
    sla = result('sla')
    role_levels = [RoleLevelCount.from_row(r) for r in result('by_role_level')]

    return {
        'success': True,
        'data': {
            'overall': OverallCounts.from_row(overall[0] if overall else None).to_dict(),
            'detailed_breakdowns': {
                'in_progress': _dicts(InProgressFile.from_row(r) for r in result('detail_in_progress')),
                'pending': _dicts(_decode_pending(r) for r in result('detail_pending')),
                'approved': _dicts(ApprovedFile.from_row(r) for r in result('detail_approved')),
                'overdue': _dicts(_decode_overdue(r, now, tz) for r in result('detail_overdue')),
                'at_risk': _dicts(_decode_at_risk(r, now, tz) for r in result('detail_at_risk')),
            },
            'by_workflow_state': _dicts(WorkflowStateCount.from_row(r) for r in result('by_workflow_state')),
            'by_department': _dicts(DepartmentCount.from_row(r) for r in result('by_department')),
            'by_town': _dicts(TownCount.from_row(r) for r in result('by_town')),
            'by_division': _dicts(DivisionCount.from_row(r) for r in result('by_division')),
            'by_district': _dicts(DistrictCount.from_row(r) for r in result('by_district')),
            'by_role_level': _dicts(role_levels),
            'by_status': _dicts(StatusCount.from_row(r) for r in result('by_status')),
            'by_priority': _dicts(PriorityCount.from_row(r) for r in result('by_priority')),
            'by_level': _dicts(summarize_levels(role_levels)),
            'by_category': _dicts(CategoryCount.from_row(r) for r in result('by_category')),
            'recent_activity': _dicts(DailyActivity.from_row(r) for r in result('recent_activity')),
            'workflow_details': _dicts(WorkflowDetail.from_row(r) for r in result('workflow_details')),
            'sla': SlaSummary.from_row(sla[0] if sla else None).to_dict(),
        },
    }


def build_dashboard_stats(caller, admin_role_ids, now=None, tz=timezone.utc, parallel=False, max_workers=4):
    now = now or datetime.now(timezone.utc)
    is_admin = caller.is_admin(admin_role_ids)
    profile = None
    if not is_admin:
        profile = models.get_efiling_profile(caller.user_id)
        if profile is None:
            logger.info("No active e-filing profile for user %s; dashboard scope is empty", caller.user_id)
    scope = resolve_visibility_scope(is_admin, profile)
    rows = collect_dashboard_rows(scope, now, parallel=parallel, max_workers=max_workers, tz=tz)
    return assemble_dashboard(rows, now, tz)
