from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import models
from dashboard import as_float, as_int


@dataclass
class DepartmentPerformance:
    department_id: Optional[int]
    department_name: Optional[str]
    is_active: Optional[bool]
    total_files: int
    completed_files: int
    pending_files: int
    overdue_files: int
    avg_processing_days: float
    active_users: int
    sla_compliance: int

    @classmethod
    def from_row(cls, row):
        return cls(
            department_id=row.get('department_id'),
            department_name=row.get('department_name'),
            is_active=row.get('is_active'),
            total_files=as_int(row.get('total_files')),
            completed_files=as_int(row.get('completed_files')),
            pending_files=as_int(row.get('pending_files')),
            overdue_files=as_int(row.get('overdue_files')),
            avg_processing_days=as_float(row.get('avg_processing_days')),
            active_users=as_int(row.get('active_users')),
            sla_compliance=as_int(row.get('sla_compliance')),
        )

    def to_dict(self):
        return {
            'department_id': self.department_id,
            'department_name': self.department_name,
            'is_active': self.is_active,
            'totalFiles': self.total_files,
            'completedFiles': self.completed_files,
            'pendingFiles': self.pending_files,
            'overdueFiles': self.overdue_files,
            'avgProcessingTime': self.avg_processing_days,
            'activeUsers': self.active_users,
            'slaCompliance': self.sla_compliance,
        }


def build_department_performance(date_range_days, include_inactive, now):
    """Per-department throughput for files created in the last ``date_range_days`` days."""
    since = now - timedelta(days=date_range_days)
    rows = models.get_department_performance(since, include_inactive=include_inactive)
    performance = [DepartmentPerformance.from_row(row).to_dict() for row in rows]
    return {
        'success': True,
        'performance': performance,
        'dateRange': date_range_days,
        'totalDepartments': len(performance),
    }
