'''
Static enums shared by the API models, the services and the job processor.
'''
import enum

# --- Base Enum Class ---
class ListableEnum(str, enum.Enum):
    """A custom Enum base class that can list all member values."""
    @classmethod
    def get_all_names(cls) -> list[str]:
        return [member.value for member in cls]


class DayOfWeek(ListableEnum):
    """The six teaching days, in week order."""
    SUNDAY = "Sunday"
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"

    @property
    def order(self) -> int:
        return list(DayOfWeek).index(self)


class DeletionStatus(ListableEnum):
    ACTIVE = "active"
    PENDING_DELETION = "pending_deletion"
    DELETED = "deleted"


class AttendanceStatus(ListableEnum):
    ATTENDED = "attended"
    ABSENT = "absent"
    CANCELLED = "cancelled"


class Authority(ListableEnum):
    """Which projection of the relationship wins a disagreement during repair."""
    TEACHER = "teacher"   # slots on the teacher record
    STUDENT = "student"   # assignments on the student record


class IssueCategory(ListableEnum):
    ORPHAN_REFERENCE = "orphan_reference"
    MISSING_MIRROR = "missing_mirror"
    INCOMPLETE_RECORD = "incomplete_record"
    FIELD_MISMATCH = "field_mismatch"


class EntityType(ListableEnum):
    TEACHER = "teacher"
    STUDENT = "student"


class JobType(ListableEnum):
    CASCADE_DELETION = "cascade_deletion"
    BATCH_CASCADE_DELETION = "batch_cascade_deletion"
    ORPHAN_CLEANUP = "orphan_cleanup"
    RECONCILIATION = "reconciliation"


class JobStatus(ListableEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class JobPriority(ListableEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class JobEventType(ListableEnum):
    QUEUED = "queued"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
