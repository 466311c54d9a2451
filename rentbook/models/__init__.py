from rentbook.models.item import Item
from rentbook.models.cabinet import Cabinet, CabinetSchedule, CabinetScheduleOverride
from rentbook.models.booking import DayBooking, HourBooking
from rentbook.models.user import User
from rentbook.models.sync_task import SyncTask
