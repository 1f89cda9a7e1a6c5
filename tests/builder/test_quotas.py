from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from geoschem_aws.builder.quotas import QuotaAdvisor, evaluate_status


def make_ec2(instances=0, key_pairs=0):
    ec2 = MagicMock()
    paginator = ec2.get_paginator.return_value
    paginator.paginate.return_value = [
        {"Reservations": [{"Instances": [{"InstanceId": f"i-{n}"} for n in range(instances)]}]}
    ]
    ec2.describe_key_pairs.return_value = {"KeyPairs": [{"KeyName": f"k{n}"} for n in range(key_pairs)]}
    return ec2


def make_quotas(limits):
    client = MagicMock()
    client.get_service_quota.side_effect = lambda ServiceCode, QuotaCode: {
        "Quota": {"Value": limits[QuotaCode], "Adjustable": True}
    }
    return client


class TestEvaluateStatus:
    """Test cases for evaluate_status."""

    @pytest.mark.parametrize("current,limit,expected", [
        (10, 100, "OK"),
        (75, 100, "WARNING"),
        (90, 100, "CRITICAL"),
        (0, 0, "CRITICAL"),
    ])
    def test_thresholds(self, current, limit, expected):
        """Test the warning and critical thresholds."""
        assert evaluate_status(current, limit) == expected


class TestQuotaAdvisor:
    """Test cases for QuotaAdvisor.check."""

    def test_report(self):
        """Test usage against both quotas."""
        advisor = QuotaAdvisor(
            make_quotas({"L-1216C47A": 64.0, "L-7C0D3F92": 5000.0}),
            make_ec2(instances=60, key_pairs=3),
            "us-west-2",
        )
        report = advisor.check()
        statuses = {q.name: q.status for q in report.quotas}
        assert statuses == {"Running On-Demand Instances": "CRITICAL", "Key Pairs": "OK"}
        assert [q.name for q in report.critical] == ["Running On-Demand Instances"]
        assert "Quota Check Summary for us-west-2" in report.summary()

    def test_lookup_failure_recorded(self):
        """Test that an API error is recorded rather than raised."""
        quotas = MagicMock()
        quotas.get_service_quota.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "GetServiceQuota"
        )
        report = QuotaAdvisor(quotas, make_ec2(), "us-west-2").check()
        assert report.quotas == []
        assert len(report.errors) == 2
