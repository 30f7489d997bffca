from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        ("assignments", "0001_initial"),
        ("surveys", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="SurveyResponse",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("local_id", models.CharField(max_length=64)),
                ("respondent_key", models.CharField(blank=True, default="", max_length=64)),
                ("job_role", models.CharField(blank=True, default="", max_length=128)),
                ("demographics", models.JSONField(blank=True, default=dict)),
                ("status", models.CharField(choices=[("in_progress", "In progress"), ("completed", "Completed")], default="completed", max_length=16)),
                ("submitted_at", models.DateTimeField(auto_now_add=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("assignment", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="responses", to="assignments.assignment")),
                ("department", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="accounts.department")),
                ("organization", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="accounts.organization")),
                ("respondent", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="survey_responses", to=settings.AUTH_USER_MODEL)),
                ("survey_version", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="responses", to="surveys.surveyversion")),
            ],
            options={
                "unique_together": {("assignment", "local_id")},
                "indexes": [
                    models.Index(fields=["assignment", "status"], name="idx_response_assign_status"),
                    models.Index(fields=["survey_version", "-submitted_at"], name="idx_response_version_time"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SurveyAnswer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("question_code", models.CharField(max_length=128)),
                ("value", models.JSONField(blank=True, null=True)),
                ("encrypted_value", models.BinaryField(blank=True, null=True)),
                ("response", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="answers", to="responses.surveyresponse")),
            ],
            options={
                "unique_together": {("response", "question_code")},
                "indexes": [models.Index(fields=["question_code"], name="idx_answer_question")],
            },
        ),
    ]
