"""Weighted multi-provider oracle aggregation for milestone evidence.

Each configured provider is queried independently. Providers that fail or return
nothing are recorded with ``verified: False`` and excluded from the weighted
computation, so one flaky source never aborts aggregation.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from extensions import db
from utils.audit_logger import SYSTEM_ACTOR, actor_from_user, record_event
from utils.security import hash_record

# Performance target parameter -> (aggregate group, field).
PARAMETER_MAP: Dict[str, tuple[str, str]] = {
    "energy_production": ("energy", "energyProduced"),
    "efficiency": ("energy", "efficiency"),
    "renewable_percentage": ("energy", "renewablePercentage"),
    "carbon_offset": ("energy", "carbonOffset"),
    "temperature": ("weather", "temperature"),
    "solar_irradiance": ("weather", "solarIrradiance"),
}

MAX_SOLAR_IRRADIANCE = 1000  # W/m2 peak


class ProviderError(Exception):
    """Raised when a provider request fails or answers with a non-success status."""


@dataclass
class OracleProvider:
    provider_id: str
    name: str
    kind: str
    weight: float
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    fetcher: Optional[Callable[..., Optional[Dict[str, Any]]]] = field(default=None, repr=False)


def calculate_solar_irradiance(cloudiness) -> Optional[float]:
    if cloudiness is None:
        return None
    return MAX_SOLAR_IRRADIANCE * (1 - (cloudiness / 100) * 0.8)


def _get_json(session, url: str, params: Dict[str, Any], timeout: int, label: str) -> Dict[str, Any]:
    try:
        response = session.get(url, params=params, timeout=timeout)
    except requests.RequestException as exc:
        raise ProviderError(f"{label} request failed: {exc}") from exc
    if not response.ok:
        raise ProviderError(f"{label} API error: {response.status_code}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError(f"{label} API returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ProviderError(f"{label} API returned {type(payload).__name__}, expected an object")
    return payload


def fetch_weather(provider: OracleProvider, milestone, project, session, timeout: int):
    coordinates = (project.location or {}).get("coordinates") or {}
    if not provider.endpoint or coordinates.get("latitude") is None or coordinates.get("longitude") is None:
        return None
    data = _get_json(
        session,
        f"{provider.endpoint.rstrip('/')}/weather",
        {"lat": coordinates["latitude"], "lon": coordinates["longitude"], "appid": provider.api_key},
        timeout,
        "Weather",
    )
    clouds = (data.get("clouds") or {}).get("all")
    return {
        "temperature": (data.get("main") or {}).get("temp"),
        "humidity": (data.get("main") or {}).get("humidity"),
        "windSpeed": (data.get("wind") or {}).get("speed"),
        "cloudiness": clouds,
        "solarIrradiance": calculate_solar_irradiance(clouds),
        "weatherCondition": ((data.get("weather") or [{}])[0] or {}).get("main"),
    }


def fetch_energy(provider: OracleProvider, milestone, project, session, timeout: int):
    if not provider.endpoint:
        return None
    data = _get_json(
        session,
        f"{provider.endpoint.rstrip('/')}/energy/{project.project_id}",
        {"apiKey": provider.api_key},
        timeout,
        "Energy",
    )
    return {
        "energyProduced": (data.get("production") or {}).get("total"),
        "energyConsumed": (data.get("consumption") or {}).get("total"),
        "efficiency": data.get("efficiency"),
        "carbonOffset": (data.get("carbonMetrics") or {}).get("offset"),
        "renewablePercentage": data.get("renewablePercentage"),
    }


def fetch_certification(provider: OracleProvider, milestone, project, session, timeout: int):
    if not provider.endpoint:
        return None
    data = _get_json(
        session,
        f"{provider.endpoint.rstrip('/')}/certifications/{project.project_id}",
        {"apiKey": provider.api_key},
        timeout,
        "Certification",
    )
    return {
        "certificationStatus": data.get("status"),
        "certificationNumber": data.get("certNumber"),
        "issuedBy": data.get("issuer"),
        "validUntil": data.get("validUntil"),
        "complianceScore": data.get("complianceScore"),
        "violations": data.get("violations") or [],
    }


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class OracleService:
    def __init__(
        self,
        providers: List[OracleProvider],
        threshold: float = 0.75,
        compliance_bar: float = 0.8,
        session: Optional[requests.Session] = None,
        timeout: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        self.providers: Dict[str, OracleProvider] = {}
        self.total_weight = 0.0
        self.threshold = threshold
        self.compliance_bar = compliance_bar
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_config(cls, config, session=None, logger=None) -> "OracleService":
        providers = [
            OracleProvider("weather", "Weather Oracle", "weather", 0.3, config.get("WEATHER_API_URL"), config.get("WEATHER_API_KEY"), fetch_weather),
            OracleProvider("energy", "Energy Oracle", "energy", 0.4, config.get("ENERGY_API_URL"), config.get("ENERGY_API_KEY"), fetch_energy),
            OracleProvider(
                "certification",
                "Certification Oracle",
                "certification",
                0.3,
                config.get("CERT_API_URL"),
                config.get("CERT_API_KEY"),
                fetch_certification,
            ),
        ]
        return cls(
            providers,
            threshold=float(config.get("ORACLE_THRESHOLD", 0.75)),
            compliance_bar=float(config.get("ORACLE_COMPLIANCE_BAR", 0.8)),
            session=session,
            timeout=int(config.get("ORACLE_REQUEST_TIMEOUT", 10)),
            logger=logger,
        )

    def register(self, provider: OracleProvider) -> None:
        if provider.weight <= 0:
            raise ValueError("Provider weight must be positive")
        if provider.provider_id in self.providers:
            self.total_weight -= self.providers[provider.provider_id].weight
        self.providers[provider.provider_id] = provider
        self.total_weight += provider.weight

    def collect(self, milestone, project) -> List[Dict[str, Any]]:
        results = []
        for provider in self.providers.values():
            entry = {
                "providerId": provider.provider_id,
                "providerName": provider.name,
                "kind": provider.kind,
                "weight": provider.weight,
                "timestamp": datetime.utcnow().isoformat(),
            }
            try:
                data = provider.fetcher(provider, milestone, project, self.session, self.timeout) if provider.fetcher else None
            except ProviderError as exc:
                self.logger.error("Oracle provider fetch failed", extra={"provider": provider.provider_id, "error": str(exc)})
                entry.update({"verified": False, "error": str(exc)})
            else:
                if data:
                    entry.update({"verified": True, "data": data})
                else:
                    entry.update({"verified": False, "error": "No data returned"})
            results.append(entry)
        return results

    def aggregate(self, results: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Weighted average over responding providers plus the consensus score."""
        responders = [r for r in results if r.get("verified") and r.get("data")]
        responding_weight = sum(r["weight"] for r in responders)
        score = responding_weight / self.total_weight if self.total_weight else 0.0
        aggregated: Dict[str, Dict[str, float]] = {}
        # Every field is normalised by the weight of all responders, not only those supplying it.
        for result in responders:
            share = result["weight"] / responding_weight
            group = aggregated.setdefault(result["kind"], {})
            for key, value in result["data"].items():
                if _is_number(value):
                    group[key] = group.get(key, 0.0) + value * share
        aggregated = {group: fields for group, fields in aggregated.items() if fields}
        return {
            "verificationScore": score,
            "consensus": score >= self.threshold,
            "aggregatedData": aggregated or None,
            "sources": results,
            "lastUpdated": datetime.utcnow().isoformat(),
        }

    @staticmethod
    def extract_actual_value(aggregated: Optional[Dict[str, Any]], parameter: str):
        if not aggregated or not parameter:
            return None
        mapping = PARAMETER_MAP.get(parameter.lower())
        if not mapping:
            return None
        group, key = mapping
        return (aggregated.get(group) or {}).get(key)

    def apply_verification_rules(self, milestone, oracle_result: Dict[str, Any]) -> Dict[str, Any]:
        passed = True
        rules = []
        details = []
        aggregated = oracle_result.get("aggregatedData")
        consensus = bool(oracle_result.get("consensus"))

        if milestone.category == "Performance Milestone":
            targets = (milestone.technical_specs or {}).get("performanceTargets") or []
            for target in targets:
                actual = self.extract_actual_value(aggregated, target.get("parameter", ""))
                if actual is None:
                    continue
                achieved = actual >= float(target.get("targetValue", 0))
                rules.append({"parameter": target.get("parameter"), "target": target.get("targetValue"), "actual": actual, "achieved": achieved})
                if not achieved:
                    passed = False
                    details.append(f"{target.get('parameter')} target not met: {actual} < {target.get('targetValue')}")
        elif milestone.category == "Testing & Commissioning":
            compliance = ((aggregated or {}).get("certification") or {}).get("complianceScore")
            if compliance is None or compliance < self.compliance_bar:
                passed = False
                details.append("Compliance score below required threshold")
        elif not consensus:
            passed = False
            details.append("Oracle verification consensus not achieved")

        if not consensus and "Oracle verification consensus not achieved" not in details:
            details.append("Oracle verification consensus not achieved")

        return {
            "passed": passed and consensus,
            "rules": rules,
            "details": details,
            "consensusScore": oracle_result.get("verificationScore"),
        }

    def refresh_milestone(self, milestone, project, actor=None) -> Dict[str, Any]:
        """Fetch, aggregate, and persist oracle data onto the milestone with an integrity hash."""
        results = self.collect(milestone, project)
        oracle_result = self.aggregate(results)
        milestone.oracle_data = {
            "dataSource": "Multiple Oracles",
            "lastUpdated": datetime.utcnow().isoformat(),
            "verificationHash": hash_record(oracle_result),
            "data": oracle_result,
        }
        record_event(
            "oracle_data_update",
            action="update",
            resource_type="milestone",
            resource_id=milestone.id,
            resource_name=milestone.title,
            description=f"Oracle data updated for milestone: {milestone.title}",
            category="system",
            severity="low",
            actor=actor_from_user(actor) if actor is not None else dict(SYSTEM_ACTOR),
            context={
                "providersUsed": len(results),
                "verificationScore": oracle_result["verificationScore"],
            },
            commit=False,
        )
        db.session.commit()
        self.logger.info(
            "Oracle data refreshed",
            extra={"milestone_id": milestone.id, "score": oracle_result["verificationScore"]},
        )
        return oracle_result

    def verify_milestone_completion(self, milestone, project, actor=None) -> Dict[str, Any]:
        """Advisory check a human verifier reviews; it never gates the verify transition."""
        oracle_result = self.refresh_milestone(milestone, project, actor=actor)
        verdict = self.apply_verification_rules(milestone, oracle_result)
        return {
            "milestoneId": milestone.id,
            "verified": verdict["passed"],
            "confidence": oracle_result["verificationScore"],
            "consensus": oracle_result["consensus"],
            "rules": verdict["rules"],
            "details": verdict["details"],
            "oracleData": oracle_result["aggregatedData"],
            "timestamp": datetime.utcnow().isoformat(),
        }

    def health_check(self) -> Dict[str, Any]:
        providers = {}
        for provider in self.providers.values():
            if not provider.endpoint:
                providers[provider.provider_id] = {"status": "not_configured", "message": "No endpoint configured"}
                continue
            started = datetime.utcnow()
            try:
                response = self.session.get(f"{provider.endpoint.rstrip('/')}/health", timeout=5)
            except requests.RequestException as exc:
                providers[provider.provider_id] = {"status": "error", "error": str(exc)}
                continue
            providers[provider.provider_id] = {
                "status": "healthy" if response.ok else "unhealthy",
                "responseTimeMs": int((datetime.utcnow() - started).total_seconds() * 1000),
            }
        overall = "healthy" if providers and all(p["status"] == "healthy" for p in providers.values()) else "degraded"
        return {"overall": overall, "providers": providers, "timestamp": datetime.utcnow().isoformat()}
