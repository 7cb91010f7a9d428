# decision_analytics/demo/seed_demo_data.py

import random
from datetime import timedelta

from decision_analytics.core.engine import AnalyticsEngine, AtomExecution, DecisionExecution

CAMPAIGNS = {
    "spring_sale": ["geo_check", "cart_value", "loyalty_tier"],
    "welcome_offer": ["geo_check", "first_visit"],
    "win_back": ["last_purchase", "churn_score", "loyalty_tier"],
}

# Mean execution time (ms) and failure probability per atom
ATOM_PROFILES = {
    "geo_check": (40.0, 0.01),
    "cart_value": (120.0, 0.03),
    "loyalty_tier": (300.0, 0.05),
    "first_visit": (25.0, 0.0),
    "last_purchase": (900.0, 0.08),
    "churn_score": (1600.0, 0.12),
}

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile",
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)",
    "Mozilla/5.0 (Linux; Android 14) Mobile",
]

COUNTRIES = ["US", "DE", "IN", "BR"]


def seed_engine(engine: AnalyticsEngine, seed: int = 7, decisions: int = 400, users: int = 25) -> int:
    """Feed a deterministic synthetic workload spanning the last 14 days.

    Returns:
        Number of decisions recorded
    """
    rng = random.Random(seed)
    end = engine.clock.now()
    start = end - timedelta(days=14)
    step = (end - start) / decisions

    for index in range(decisions):
        timestamp = start + step * index
        campaign_id = rng.choice(sorted(CAMPAIGNS))
        user_number = rng.randrange(users)
        user_id = f"user_{user_number:03d}"
        session_id = f"{user_id}-{timestamp:%Y%m%d}"

        atoms = []
        for atom_id in CAMPAIGNS[campaign_id]:
            mean_time, failure_rate = ATOM_PROFILES[atom_id]
            failed = rng.random() < failure_rate
            atoms.append(AtomExecution(
                atom_id=atom_id,
                execution_time=max(1.0, rng.gauss(mean_time, mean_time * 0.2)),
                success=not failed,
                error="upstream timeout" if failed else None,
            ))

        errors = [atom.error for atom in atoms if atom.error]
        context = {
            "userAgent": USER_AGENTS[user_number % len(USER_AGENTS)],
            "location": {"country": COUNTRIES[user_number % len(COUNTRIES)]},
        }
        if user_number % 3 == 0:
            context["segment"] = "vip"

        engine.record_decision_execution(DecisionExecution(
            campaign_id=campaign_id,
            decision_id=f"{campaign_id}-rule",
            user_id=user_id,
            session_id=session_id,
            execution_time=sum(atom.execution_time for atom in atoms),
            success=not errors and rng.random() < 0.85,
            atoms_used=atoms,
            user_context=context,
            errors=errors,
            timestamp=timestamp,
        ))

    for session in list(engine.user_analyzer.store.sessions.values()):
        if session.journey:
            engine.user_analyzer.end_session(
                session.session_id, session.journey[-1].timestamp + timedelta(minutes=rng.randint(1, 45))
            )

    engine.atom_analyzer.build_dependency_graph()
    return decisions
