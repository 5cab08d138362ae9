"""A user's whole path through the hourly jobs, against the in-memory stores."""

from datetime import timedelta

import pytest

from queuesync.attribution.agents import ConversionAgentAttribution
from queuesync.cleanup.outstanding import OutstandingRequirementsCleanup
from queuesync.cleanup.signature import SignatureConversionCleanup
from queuesync.core.models import ConversionType, QueueType
from queuesync.discovery.new_requirements import NewRequirementsDiscovery
from queuesync.discovery.new_users import NewUsersDiscovery

from .fakes import NOW


def at(minutes):
    return lambda: NOW + timedelta(minutes=minutes)


@pytest.mark.unit
class TestLifecycle:
    def test_signup_to_completion(self, make_job, local, replica):
        replica.add_user(1, created_at=NOW - timedelta(minutes=10))

        # :05 new user lands in the unsigned queue
        make_job(NewUsersDiscovery, now=at(0)).run()
        assert local.scores[1].current_queue_type == QueueType.UNSIGNED_USERS

        # Calls happen, one too short to count; the user signs
        local.add_session(7, 1, NOW + timedelta(minutes=5), talk_time_seconds=180)
        local.add_session(3, 1, NOW + timedelta(minutes=10), talk_time_seconds=20)
        replica.sign(1)

        signature = make_job(SignatureConversionCleanup, now=at(35)).run()
        assert signature.conversions_logged == 1
        assert local.scores[1].current_queue_type is None

        # A new actionable requirement pulls the signed user back in
        req = replica.add_requirement(1, "id_document", created_at=NOW + timedelta(minutes=40))
        replica.add_requirement(1, "cfa", created_at=NOW + timedelta(minutes=40))
        requirements = make_job(NewRequirementsDiscovery, now=at(70)).run()
        assert requirements.users_updated == 1
        assert local.scores[1].current_queue_type == QueueType.OUTSTANDING_REQUESTS

        # Nothing changes while the requirement is pending
        pending = make_job(OutstandingRequirementsCleanup, now=at(80)).run()
        assert pending.conversions_found == 0

        local.add_session(3, 1, NOW + timedelta(minutes=90), talk_time_seconds=240)
        req["status"] = "completed"
        done = make_job(OutstandingRequirementsCleanup, now=at(140)).run()
        assert done.conversions_logged == 1
        assert local.scores[1].current_queue_type is None

        attribution = make_job(ConversionAgentAttribution, now=at(180)).run()
        assert attribution.conversions_attributed == 2

        by_type = {c.conversion_type: c for c in local.conversions_for(1)}
        signed = by_type[ConversionType.SIGNATURE_OBTAINED.value]
        completed = by_type[ConversionType.REQUIREMENTS_COMPLETED.value]
        assert signed.primary_agent_id == 7
        assert signed.contributing_agents == []
        assert completed.primary_agent_id == 3
        assert completed.contributing_agents == [7]

    def test_signature_before_discovery_never_enters_queue(self, make_job, local, replica):
        replica.add_user(1, signature=42, created_at=NOW - timedelta(minutes=10))

        make_job(NewUsersDiscovery).run()
        cleanup = make_job(SignatureConversionCleanup).run()

        assert local.scores[1].current_queue_type is None
        assert cleanup.total_unsigned_users == 0
        assert local.conversions == []
