import apps.surveys.models
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Survey",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("code", models.SlugField(max_length=128, unique=True)),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, null=True)),
                ("status", models.CharField(choices=[("draft", "Draft"), ("published", "Published"), ("archived", "Archived")], default="draft", max_length=16)),
                ("version", models.PositiveIntegerField(default=0)),
                ("settings", models.JSONField(default=apps.surveys.models.default_survey_settings)),
                ("branding", models.JSONField(default=dict)),
                ("completion_settings", models.JSONField(default=apps.surveys.models.default_completion_settings)),
                ("default_language", models.CharField(default="en", max_length=16)),
                ("supported_languages", models.JSONField(default=apps.surveys.models.default_languages)),
                ("reflection_prompts", models.JSONField(default=list)),
                ("published_at", models.DateTimeField(blank=True, null=True)),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("organization", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="surveys", to="accounts.organization")),
            ],
            options={
                "indexes": [models.Index(fields=["status"], name="idx_survey_status")],
            },
        ),
        migrations.CreateModel(
            name="SurveyBlock",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, null=True)),
                ("sort_order", models.IntegerField()),
                ("survey", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="blocks", to="surveys.survey")),
            ],
            options={
                "ordering": ["sort_order"],
                "unique_together": {("survey", "sort_order")},
            },
        ),
        migrations.CreateModel(
            name="SurveyQuestion",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("code", models.CharField(max_length=128)),
                ("title", models.TextField()),
                ("description", models.TextField(blank=True, null=True)),
                ("type", models.CharField(choices=[("single-select", "Single select"), ("multi-select", "Multi select"), ("matrix-likert", "Matrix / Likert"), ("ranking", "Ranking"), ("nps", "Net Promoter Score"), ("slider", "Slider"), ("open-ended", "Open ended"), ("file-upload", "File upload"), ("demographics", "Demographics")], max_length=24)),
                ("required", models.BooleanField(default=False)),
                ("sensitive", models.BooleanField(default=False)),
                ("sort_order", models.IntegerField()),
                ("options", models.JSONField(default=list)),
                ("allow_other", models.BooleanField(default=False)),
                ("matrix_rows", models.JSONField(default=list)),
                ("matrix_columns", models.JSONField(default=list)),
                ("scale", models.JSONField(blank=True, null=True)),
                ("ranking_items", models.JSONField(default=list)),
                ("max_rankings", models.PositiveIntegerField(blank=True, null=True)),
                ("conditional_logic", models.JSONField(blank=True, null=True)),
                ("validation", models.JSONField(default=dict)),
                ("block", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="questions", to="surveys.surveyblock")),
            ],
            options={
                "ordering": ["sort_order"],
                "unique_together": {("block", "sort_order"), ("block", "code")},
            },
        ),
        migrations.CreateModel(
            name="SurveyVersion",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("version", models.PositiveIntegerField()),
                ("definition", models.JSONField()),
                ("published_at", models.DateTimeField()),
                ("published_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("survey", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="versions", to="surveys.survey")),
            ],
            options={
                "ordering": ["version"],
                "unique_together": {("survey", "version")},
            },
        ),
    ]
