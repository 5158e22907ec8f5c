import dataclasses

from turnproxy.stages import (
    BrowserContinuation,
    BrowserStageObservation,
    BrowserStageRequest,
    BrowserStageResult,
    Cookie,
)


def test_continuation_defaults_are_independent():
    first = BrowserContinuation()
    second = BrowserContinuation()
    first.cookies.append(Cookie(name="remixsid", value="secret"))
    first.stage_results.append(BrowserStageResult(stage="s", method="POST", url="https://vk.com/"))
    assert second.cookies == []
    assert second.stage_results == []
    assert len(first.cookies) == 1


def test_observation_requirements_default_to_empty():
    observation = BrowserStageObservation(
        stage="ok_anonym_login", method="POST", url_prefix="https://calls.okcdn.ru/fb.do"
    )
    assert observation.required_form_keys == []
    assert observation.required_form_values == {}
    assert observation.required_form_value_alternatives == {}


def test_cookie_replace_leaves_original_untouched():
    original = Cookie(name="remixsid", value="secret", domain=".vk.ru", path="/")
    changed = dataclasses.replace(original, value="token")
    assert original.value == "secret"
    assert changed.value == "token"
    assert changed.domain == original.domain
    assert changed != original


def test_request_form_is_kept_and_results_compare_by_value():
    request = BrowserStageRequest(
        stage="vk_calls_get_anonymous_token",
        method="POST",
        url="https://api.vk.ru/method/calls.getAnonymousToken",
        form={"name": "123"},
    )
    assert request.form == {"name": "123"}
    assert BrowserStageRequest(stage="a", method="POST", url="u").form == {}

    left = BrowserStageResult(stage="a", method="POST", url="u", body={"response": {}})
    right = BrowserStageResult(stage="a", method="POST", url="u", body={"response": {}})
    assert left == right
    assert left.body is not right.body