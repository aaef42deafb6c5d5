"""Step definitions exercising the scenario World."""

import logging
from functools import partial

import requests
from behave import given, then, when
from behave.runner import Context

from worldkit.services import StaticHttpService

logger = logging.getLogger(__name__)


def _service(context: Context, name: str):
    return context.world.get_context()[name]


@given('a static service "{name}" answering "{body}"')
def step_create_static_service(context: Context, name: str, body: str) -> None:
    construct = partial(StaticHttpService, body=body)
    context.harness.call(context.world.create_service(name, construct))


@when('I stop the service "{name}"')
def step_stop_service(context: Context, name: str) -> None:
    context.stopped_service = _service(context, name)
    context.harness.call(context.world.stop_service(context.stopped_service))


@then('the service "{name}" answers "{body}"')
def step_service_answers(context: Context, name: str, body: str) -> None:
    response = requests.get(_service(context, name).location.url, timeout=5)
    assert response.status_code == 200, response.status_code
    assert response.text == body, response.text


@then('the service "{name}" is not in the context')
def step_service_missing(context: Context, name: str) -> None:
    assert name not in context.world.get_context()


@then("the stopped service no longer answers")
def step_stopped_service_gone(context: Context) -> None:
    try:
        requests.get(context.stopped_service.location.url, timeout=1)
    except requests.ConnectionError:
        return
    raise AssertionError(f"{context.stopped_service.location.url} still answers")


@then('the global service "{name}" is visible')
def step_global_service_visible(context: Context, name: str) -> None:
    service = _service(context, name)
    assert service not in context.world.owned_resources
    assert service in context.orchestrator.global_world.owned_resources


@then("the world has identity credentials")
def step_world_credentials(context: Context) -> None:
    credentials = context.world.get_identity_credentials()
    assert credentials.username
    assert "@" in credentials.email
    assert context.world.get_identity_credentials() is credentials


@when('I post to "{path}" on imposter "{name}"')
def step_post_to_imposter(context: Context, path: str, name: str) -> None:
    imposter = _service(context, name)
    context.response = requests.post(f"{imposter.location.url}{path}", json={}, timeout=5)


@then("the response status is {status:d}")
def step_response_status(context: Context, status: int) -> None:
    assert context.response.status_code == status, context.response.status_code


@then('imposter "{name}" recorded {count:d} request(s)')
def step_imposter_recorded(context: Context, name: str, count: int) -> None:
    imposter = _service(context, name)
    manager = context.orchestrator.imposter_manager
    captured = context.harness.call(manager.wait_for_requests(imposter, count, timeout=5))
    assert len(captured) >= count, captured
