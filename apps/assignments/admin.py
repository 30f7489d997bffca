from django.contrib import admin
from .models import Assignment, ReminderFireRecord


@admin.register(Assignment)
class AssignmentAdmin(admin.ModelAdmin):
    list_display = ("id", "survey", "status", "start_date", "end_date", "responses_completed")
    list_filter = ("status",)
    filter_horizontal = ("assigned_users", "assigned_organizations", "assigned_departments")


admin.site.register(ReminderFireRecord)
