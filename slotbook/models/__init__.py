from slotbook.models.business import (
    Business,
    BusinessCreate,
    BusinessSettings,
    CapacityMode,
    Employee,
    EmployeeService,
    Service,
)
from slotbook.models.schedule import BreakInterval, DateException, OwnerKind, ScheduleOwner, WeeklyRule
from slotbook.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentPublic,
    AppointmentStatus,
)

__all__ = [
    "Business",
    "BusinessCreate",
    "BusinessSettings",
    "CapacityMode",
    "Employee",
    "EmployeeService",
    "Service",
    "BreakInterval",
    "DateException",
    "OwnerKind",
    "ScheduleOwner",
    "WeeklyRule",
    "Appointment",
    "AppointmentCreate",
    "AppointmentPublic",
    "AppointmentStatus",
]
