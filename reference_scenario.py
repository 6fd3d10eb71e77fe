# reference_scenario.py

from typing import Any, Dict, List, Optional

from scenario_runner import Expectation, RequestStep, ScenarioDefinition

DEFAULT_TEAM_NAME = "backend"
DEFAULT_MEMBERS: List[Dict[str, Any]] = [
    {"user_id": "u1", "username": "Alice", "is_active": True},
    {"user_id": "u2", "username": "Bob", "is_active": True},
    {"user_id": "u3", "username": "Eve", "is_active": True},
]


def build_reference_scenario(
    team_name: str = DEFAULT_TEAM_NAME,
    members: Optional[List[Dict[str, Any]]] = None,
    author_id: str = "u1",
    pr_name: str = "Load test PR",
) -> ScenarioDefinition:
    """
    The pull-request service workflow: health, team registration, PR creation
    and PR merge. The PR id of each iteration is its correlation ID, so
    concurrent VUs never collide on create or merge.
    """
    team_members = members if members is not None else DEFAULT_MEMBERS
    return ScenarioDefinition(
        name="PR Service Workflow",
        description="Health check, team add, pull request create and merge",
        headers={"Accept": "application/json"},
        staticVars={"teamName": team_name, "members": team_members, "authorId": author_id, "prName": pr_name},
        steps=[
            RequestStep(
                id="health",
                name="Health",
                check="health is 200",
                method="GET",
                url="/health",
                expect=Expectation(status=[200], bodyByStatus={200: {"status": "ok"}}),
            ),
            RequestStep(
                id="team_add",
                name="Add Team",
                check="team add 201 or 400",
                method="POST",
                url="/team/add",
                body={"team_name": "{{teamName}}", "members": "##VAR:unquoted:members##"},
                expect=Expectation(
                    status=[201, 400],
                    bodyByStatus={201: {"team.team_name": team_name}, 400: {"error.code": "TEAM_EXISTS"}},
                ),
            ),
            RequestStep(
                id="pr_create",
                name="Create Pull Request",
                check="create pr 201 or 409",
                method="POST",
                url="/pullRequest/create",
                body={
                    "pull_request_id": "{{correlationId}}",
                    "pull_request_name": "{{prName}}",
                    "author_id": "{{authorId}}",
                },
                extract={"prStatus": "body.pr.status"},
                expect=Expectation(
                    status=[201, 409],
                    bodyByStatus={201: {"pr.status": "OPEN"}, 409: {"error.code": "PR_EXISTS"}},
                ),
            ),
            RequestStep(
                id="pr_merge",
                name="Merge Pull Request",
                check="merge pr 200 or 404",
                method="POST",
                url="/pullRequest/merge",
                body={"pull_request_id": "{{correlationId}}"},
                expect=Expectation(
                    status=[200, 404],
                    bodyByStatus={200: {"pr.status": "MERGED"}, 404: {"error.code": "NOT_FOUND"}},
                ),
            ),
        ],
    )
