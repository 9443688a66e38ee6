"""Разбор шаблонов миссий из JSON"""

import json
from datetime import datetime, timedelta

import pytest

from schemas.mission_template import CompletionCriteria, MissionStatus
from scripts.seed_group_missions import DEFAULT_PATH, to_row
from utils.mission_validation import parse_tags, validate_template_payload

START = datetime(2026, 11, 2, 6, 0)


def payload(**overrides):
    data = {
        "title": "Morning run",
        "status": "registration",
        "group_settings": {"min_members": 2, "max_members": 4},
        "time_settings": {"start_date": "2026-11-02T06:00:00Z", "end_date": "2026-11-09T06:00:00"},
        "objectives": {"group_objectives": [{"description": "Km", "target": 50}]},
    }
    data.update(overrides)
    return data


class TestParseTags:
    @pytest.mark.parametrize("raw,expected", [
        ("спорт, сон , вода", ["спорт", "сон", "вода"]),
        ("-", []),
        ("", []),
        ("книги,,", ["книги"]),
    ])
    def test_parse_tags(self, raw, expected):
        assert parse_tags(raw) == expected


class TestTemplatePayload:
    def test_default_formation_deadline_for_auto_match(self):
        template = validate_template_payload(payload(), lead_hours=24)

        assert template.time_settings.start_date == START
        assert template.group_settings.formation_deadline == START - timedelta(hours=24)
        assert template.status == MissionStatus.REGISTRATION

    def test_no_deadline_without_auto_match(self):
        template = validate_template_payload(
            payload(group_settings={"min_members": 2, "max_members": 4, "auto_match": False}),
        )

        assert template.group_settings.formation_deadline is None

    def test_invalid_group_size(self):
        with pytest.raises(ValueError, match="Morning run"):
            validate_template_payload(payload(group_settings={"min_members": 5, "max_members": 2}))


class TestSeedRows:
    def test_row_rebuilds_same_template(self):
        row = to_row(payload(objectives={
            "group_objectives": [{"description": "Km", "target": 50}],
            "completion_criteria": "percentage",
            "completion_percentage": 80,
        }))
        row.id = 1

        template = row.to_template()

        assert (template.group_settings.min_members, template.group_settings.max_members) == (2, 4)
        assert template.group_settings.formation_deadline == START - timedelta(hours=24)
        assert template.objectives.completion_criteria == CompletionCriteria.PERCENTAGE
        assert template.objectives.group_objectives[0].target == 50

    def test_bundled_missions_are_valid(self):
        with open(DEFAULT_PATH, encoding="utf-8") as f:
            missions = json.load(f)["missions"]

        assert all(to_row(mission).title for mission in missions)
