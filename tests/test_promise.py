from ralph.core.promise import detect_promise, tag_promise
from ralph.core.prompt import build_iteration_prompt, build_system_prompt


def test_detect_promise_matches_tagged_phrase() -> None:
    assert detect_promise("All done. <promise>I'm done!</promise>", "I'm done!") is True


def test_detect_promise_requires_tags() -> None:
    assert detect_promise("I'm done!", "I'm done!") is False


def test_detect_promise_is_case_and_whitespace_sensitive() -> None:
    assert detect_promise("<promise>i'm done!</promise>", "I'm done!") is False
    assert detect_promise("<promise>Im   done</promise>", "I'm done!") is False
    assert detect_promise("<promise> I'm done! </promise>", "I'm done!") is False


def test_detect_promise_empty_phrase_never_matches() -> None:
    assert detect_promise("<promise></promise>", "") is False
    assert detect_promise("", "done") is False


def test_tag_promise_wraps_phrase() -> None:
    assert tag_promise("ok") == "<promise>ok</promise>"


def test_system_prompt_embeds_tagged_phrase() -> None:
    prompt = build_system_prompt("I'm special!")

    assert "<promise>I'm special!</promise>" in prompt
    assert "{promise}" not in prompt
    assert "VERY LAST text" in prompt


def test_iteration_prompt_prefix() -> None:
    assert build_iteration_prompt("Test task", 2, 5) == "[Iteration 2/5]\n\nTest task"
