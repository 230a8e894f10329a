"""
Unit tests for renovate operator data models.

Tests the conversion between custom resource objects and models.
"""
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from renovate_operator.models import (
    JobIdentifier,
    JobStatus,
    ProjectStatus,
    RenovateJob,
    parse_image_pull_secrets,
)


def make_resource(**spec):
    return {
        "apiVersion": "renovate-operator.mogenius.com/v1alpha1",
        "kind": "RenovateJob",
        "metadata": {"name": "renovate", "namespace": "tools", "resourceVersion": "7", "uid": "abc"},
        "spec": {"schedule": "0 * * * *", "image": "renovate/renovate:39", **spec},
        "status": {"projects": [
            {
                "name": "org/a",
                "status": "completed",
                "lastRun": "2024-01-01T12:00:00Z",
                "duration": "1m 5s",
                "renovateResultStatus": "No Config",
            },
        ]},
    }


class TestRenovateJob:
    """Custom resource conversion."""

    def test_from_resource(self):
        job = RenovateJob.from_resource(make_resource(discoveryFilter="org/*", secretRef="env", parallelism=3))
        assert job.name == "renovate"
        assert job.namespace == "tools"
        assert job.resource_version == "7"
        assert job.uid == "abc"
        assert job.spec.discovery_filter == "org/*"
        assert job.spec.secret_ref == "env"
        assert job.spec.parallelism == 3
        [project] = job.status.projects
        assert project.status == JobStatus.COMPLETED
        assert project.renovate_result_status == "No Config"
        assert project.last_run.year == 2024

    def test_to_resource_uses_camel_case(self):
        job = RenovateJob.from_resource(make_resource(extraEnv=[{"name": "A", "value": "1"}]))
        resource = job.to_resource()
        assert resource["metadata"]["resourceVersion"] == "7"
        assert resource["spec"]["extraEnv"] == [{"name": "A", "value": "1"}]
        [project] = resource["status"]["projects"]
        assert project["renovateResultStatus"] == "No Config"
        assert project["status"] == "completed"
        assert "lastRun" in project

    def test_missing_status(self):
        resource = make_resource()
        del resource["status"]
        assert RenovateJob.from_resource(resource).status.projects == []

    def test_parallelism_must_be_positive(self):
        with pytest.raises(ValidationError):
            RenovateJob.from_resource(make_resource(parallelism=0))

    def test_fullname(self):
        job = RenovateJob.from_resource(make_resource())
        assert job.fullname == "renovate-tools"
        assert job.identifier == JobIdentifier("renovate", "tools")
        assert job.identifier.fullname == job.fullname


class TestWebhookAuthEnabled:
    """Webhook authentication is off unless every level enables it."""

    @pytest.mark.parametrize("webhook,expected", [
        (None, False),
        ({"enabled": True}, False),
        ({"enabled": True, "authentication": {"enabled": False}}, False),
        ({"enabled": True, "authentication": {"enabled": True, "secretRef": {"name": "s", "key": "k"}}}, True),
    ])
    def test_enabled(self, webhook, expected):
        spec = {"webhook": webhook} if webhook is not None else {}
        assert RenovateJob.from_resource(make_resource(**spec)).webhook_auth_enabled() is expected


class TestProjectStatus:
    """Project status defaults."""

    def test_defaults(self):
        project = ProjectStatus(name="org/a")
        assert project.status == JobStatus.SCHEDULED
        assert project.last_run is None
        assert project.duration is None

    def test_populate_by_field_name(self):
        project = ProjectStatus(name="org/a", renovate_result_status="done")
        assert project.model_dump(by_alias=True)["renovateResultStatus"] == "done"


class TestImagePullSecrets:
    """IMAGE_PULL_SECRETS parsing."""

    @pytest.mark.parametrize("raw", ["", "[]", "  []  "])
    def test_empty(self, raw):
        assert parse_image_pull_secrets(raw) == []

    def test_list(self):
        assert parse_image_pull_secrets('[{"name": "a"}, {"name": "b"}]') == [{"name": "a"}, {"name": "b"}]

    @pytest.mark.parametrize("raw", ["{", '{"name": "a"}', '["a"]'])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_image_pull_secrets(raw)
