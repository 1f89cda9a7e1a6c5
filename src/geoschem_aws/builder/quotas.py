"""Advisory AWS quota report shown before a build. Never blocks a run."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 75.0
CRITICAL_THRESHOLD = 90.0


@dataclass
class QuotaStatus:
    service: str
    name: str
    current: float
    limit: float
    status: str
    adjustable: bool = False

    @property
    def usage(self) -> float:
        return (self.current / self.limit) * 100 if self.limit else 0.0

    @property
    def message(self) -> str:
        text = f"{self.service} {self.name}: {self.current:.0f}/{self.limit:.0f} ({self.usage:.1f}%)"
        if self.status == "CRITICAL":
            return f"{text} - usage is critical, consider requesting a quota increase"
        if self.status == "WARNING":
            return f"{text} - usage is high, monitor closely"
        return text


@dataclass
class QuotaReport:
    region: str
    quotas: List[QuotaStatus] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def critical(self) -> List[QuotaStatus]:
        return [quota for quota in self.quotas if quota.status == "CRITICAL"]

    def summary(self) -> str:
        counts = {status: 0 for status in ("OK", "WARNING", "CRITICAL")}
        for quota in self.quotas:
            counts[quota.status] = counts.get(quota.status, 0) + 1
        lines = [
            f"Quota Check Summary for {self.region}:",
            f"OK: {counts['OK']}  WARNING: {counts['WARNING']}  CRITICAL: {counts['CRITICAL']}",
        ]
        lines.extend(quota.message for quota in self.quotas)
        lines.extend(f"unavailable: {error}" for error in self.errors)
        return "\n".join(lines)


def evaluate_status(current: float, limit: float) -> str:
    if limit <= 0:
        return "CRITICAL"
    usage = (current / limit) * 100
    if usage >= CRITICAL_THRESHOLD:
        return "CRITICAL"
    if usage >= WARNING_THRESHOLD:
        return "WARNING"
    return "OK"


class QuotaAdvisor:
    """Compares EC2 usage with Service Quotas limits relevant to build nodes."""

    def __init__(self, quotas_client: Any, ec2_client: Any, region: str) -> None:
        self.quotas = quotas_client
        self.ec2 = ec2_client
        self.region = region

    def _get_quota(self, service_code: str, quota_code: str) -> Optional[dict]:
        response = self.quotas.get_service_quota(ServiceCode=service_code, QuotaCode=quota_code)
        return response.get("Quota")

    def _running_instances(self) -> int:
        count = 0
        paginator = self.ec2.get_paginator("describe_instances")
        for page in paginator.paginate(Filters=[{"Name": "instance-state-name", "Values": ["running", "pending"]}]):
            for reservation in page.get("Reservations", []):
                count += len(reservation.get("Instances", []))
        return count

    def _key_pairs(self) -> int:
        return len(self.ec2.describe_key_pairs().get("KeyPairs", []))

    def check(self) -> QuotaReport:
        """Collect quota statuses; individual lookup failures are recorded, not raised."""
        report = QuotaReport(region=self.region)
        checks = (
            ("EC2", "Running On-Demand Instances", "ec2", "L-1216C47A", self._running_instances),
            ("EC2", "Key Pairs", "ec2", "L-7C0D3F92", self._key_pairs),
        )
        for service, name, service_code, quota_code, usage in checks:
            try:
                quota = self._get_quota(service_code, quota_code) or {}
                current = float(usage())
            except (ClientError, BotoCoreError) as exc:
                logger.warning(f"Could not check {service} {name} quota: {exc}")
                report.errors.append(f"{service} {name}: {exc}")
                continue
            limit = float(quota.get("Value", 0.0))
            report.quotas.append(
                QuotaStatus(
                    service=service,
                    name=name,
                    current=current,
                    limit=limit,
                    status=evaluate_status(current, limit),
                    adjustable=bool(quota.get("Adjustable", False)),
                )
            )
        return report
