# ai_usage_health/demo/seed_demo_data.py

from datetime import timedelta

from ai_usage_health.core.aggregator import ingest_session
from ai_usage_health.core.health import calculate_health_score
from ai_usage_health.core.validation import parse_session_report
from ai_usage_health.storage.models import RecommendationCategory, RecommendationStatus, utc_now
from ai_usage_health.storage.repository import get_repository, initialize_schema

initialize_schema()
repository = get_repository()

machine = repository.add_machine("demo-laptop", hostname="demo.local", platform="darwin")
start = utc_now() - timedelta(days=2)

reports = [
    {
        "machineId": machine.id,
        "sessionId": "demo-session-1",
        "projectId": "webapp",
        "duration": 1800,
        "toolsUsed": ["Read", "Edit", "Bash"],
        "commandsRun": ["docker compose up -d", "psql -c 'select 1'", "npm test"],
        "totalTokens": 42000,
        "contextTokens": 9000,
        "detectedTechs": ["docker", "postgresql", "npm"],
        "detectedPatterns": ["database_queries", "container_management"],
        "timestamp": start.isoformat(),
    },
    {
        "machineId": machine.id,
        "sessionId": "demo-session-2",
        "projectId": "api",
        "duration": 900,
        "toolsUsed": ["Read", "Bash"],
        "commandsRun": ["docker build .", "docker ps"],
        "totalTokens": 18000,
        "detectedTechs": ["docker"],
        "detectedPatterns": ["container_management"],
        "timestamp": (start + timedelta(hours=6)).isoformat(),
    },
]

for payload in reports:
    ingest_session(parse_session_report(payload), repository)

repository.add_recommendation(machine.id, RecommendationCategory.MCP_SERVER, 6000, title="Add postgres MCP server")
repository.add_recommendation(machine.id, RecommendationCategory.MCP_SERVER, 2500, title="Add docker MCP server")
repository.add_recommendation(
    machine.id, RecommendationCategory.SKILL, 3000,
    status=RecommendationStatus.APPLIED, title="Create container-debug skill",
)

score = calculate_health_score(machine.id, repository)

print(f"Demo data inserted for machine {machine.id} (health score {score.composite})")
