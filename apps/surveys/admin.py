from django.contrib import admin
from .models import Survey, SurveyBlock, SurveyQuestion, SurveyVersion

admin.site.register(Survey)
admin.site.register(SurveyBlock)
admin.site.register(SurveyQuestion)


@admin.register(SurveyVersion)
class SurveyVersionAdmin(admin.ModelAdmin):
    list_display = ("id", "survey", "version", "published_at")
    readonly_fields = ("survey", "version", "definition", "published_at", "published_by")
