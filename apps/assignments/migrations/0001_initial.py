import apps.assignments.models
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        ("surveys", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Assignment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("start_date", models.DateTimeField(blank=True, null=True)),
                ("end_date", models.DateTimeField(blank=True, null=True)),
                ("reminder_schedule", models.JSONField(default=apps.assignments.models.default_reminder_schedule)),
                ("access_control", models.JSONField(default=apps.assignments.models.default_access_control)),
                ("unresolved_targets", models.JSONField(blank=True, default=dict)),
                ("status", models.CharField(choices=[("draft", "Draft"), ("scheduled", "Scheduled"), ("active", "Active"), ("paused", "Paused"), ("completed", "Completed")], default="draft", max_length=16)),
                ("responses_total", models.PositiveIntegerField(default=0)),
                ("responses_completed", models.PositiveIntegerField(default=0)),
                ("responses_in_progress", models.PositiveIntegerField(default=0)),
                ("counts_reconciled_at", models.DateTimeField(blank=True, null=True)),
                ("assigned_departments", models.ManyToManyField(blank=True, related_name="survey_assignments", to="accounts.department")),
                ("assigned_organizations", models.ManyToManyField(blank=True, related_name="survey_assignments", to="accounts.organization")),
                ("assigned_users", models.ManyToManyField(blank=True, related_name="survey_assignments", to=settings.AUTH_USER_MODEL)),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("survey", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="assignments", to="surveys.survey")),
                ("survey_version", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="assignments", to="surveys.surveyversion")),
            ],
            options={
                "indexes": [models.Index(fields=["status", "end_date"], name="idx_assign_status_end")],
            },
        ),
        migrations.CreateModel(
            name="ReminderFireRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("offset_days", models.PositiveIntegerField()),
                ("fired_at", models.DateTimeField()),
                ("recipient_count", models.PositiveIntegerField(default=0)),
                ("assignment", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="reminder_fires", to="assignments.assignment")),
            ],
            options={
                "unique_together": {("assignment", "offset_days")},
            },
        ),
    ]
