"""
Shared fixtures: an in-memory SQLite session per test plus canned
verdict and scenario payloads as an external generator would produce them.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from decision_engine.database import Base
from decision_engine.models import db_models  # noqa: F401  registers tables


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def user_id():
    return "user-a"


@pytest.fixture
def other_user_id():
    return "user-b"


def make_verdict(headline="Raise Pro tier to $49", confidence=0.82, risk=0.35, **overrides):
    verdict = {
        "headline": headline,
        "summary": "Competitors price 20-30% higher for comparable seats.",
        "confidence_score": confidence,
        "cta": "Roll out to new signups first",
        "why_this_decision": ["Underpriced vs. market", "Low churn sensitivity"],
        "what_to_expect": {"risk_score": risk, "description": "Minor churn among legacy users"},
        "supporting_details": {
            "expected_revenue_impact": "+8–14%",
            "churn_outlook": "Churn up 0.5–1pp for 60 days",
            "market_positioning": "Mid-market",
        },
    }
    verdict.update(overrides)
    return verdict


def make_scenarios(aggressive_revenue="+15–25%", balanced_revenue="+8–14%"):
    return {
        "scenarios": [
            {
                "scenario_id": "aggressive",
                "title": "Aggressive",
                "summary": "Raise all tiers 30%",
                "metrics": {
                    "revenue_impact_range": aggressive_revenue,
                    "churn_impact_range": "+2–4pp",
                    "risk_label": "high",
                    "time_to_impact": "14-30 days",
                    "execution_effort": "medium",
                },
            },
            {
                "scenario_id": "balanced",
                "title": "Balanced",
                "summary": "Raise Pro tier only",
                "metrics": {
                    "revenue_impact_range": balanced_revenue,
                    "churn_impact_range": "+0.5–1pp",
                    "risk_label": "medium",
                    "time_to_impact": "30-60 days",
                    "execution_effort": "medium",
                },
            },
            {
                "scenario_id": "conservative",
                "title": "Conservative",
                "summary": "Grandfather existing users",
                "metrics": {
                    "revenue_impact_range": "+3–6%",
                    "churn_impact_range": "0–0.5pp",
                    "risk_label": "low",
                    "time_to_impact": "60-90 days",
                    "execution_effort": "low",
                },
            },
            {
                "scenario_id": "do_nothing",
                "title": "Do nothing",
                "summary": "Keep current pricing",
                "metrics": {
                    "revenue_impact_range": "Stagnates",
                    "churn_impact_range": "n/a",
                    "risk_label": "low",
                    "time_to_impact": "n/a",
                    "execution_effort": "low",
                },
            },
        ],
        "model_meta": {"model_name": "scenario-gen", "prompt_version": "v3"},
    }


@pytest.fixture
def verdict_payload():
    return make_verdict()


@pytest.fixture
def scenario_payload():
    return make_scenarios()


@pytest.fixture
def decision_service(db):
    from decision_engine.services.decision_service import DecisionService
    return DecisionService(db)


@pytest.fixture
def decision(decision_service, user_id, verdict_payload):
    return decision_service.create_decision(
        user_id,
        "https://www.acme.io/pricing",
        verdict_payload,
        context={"primary_kpi": "mrr_growth", "market": {"segment": "smb"}},
    )


@pytest.fixture
def decision_with_scenarios(db, decision, user_id, scenario_payload):
    from decision_engine.services.scenario_store import ScenarioStore
    ScenarioStore(db).generate_scenarios(decision.id, user_id, lambda d: scenario_payload)
    return decision


@pytest.fixture
def verdict_factory():
    return make_verdict


@pytest.fixture
def scenario_factory():
    return make_scenarios
