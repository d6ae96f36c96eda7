"""Task bodies used by the engine tests and the CLI smoke test."""

from __future__ import annotations


def sequential(task_input, tools):
    return [
        tools.call("database", "first"),
        tools.call("database", "second"),
        tools.call("database", "third"),
    ]


def failing(task_input, tools):
    tools.call("database", "first")
    return tools.call("database", "fail", "payload")


def no_calls(task_input, tools):
    return {"doubled": task_input["value"] * 2}


def raises(task_input, tools):
    raise ValueError("bad input")


def swallows_exceptions(task_input, tools):
    try:
        value = tools.call("database", "echo", "kept")
    except Exception:  # noqa: BLE001
        return "swallowed"
    return value


def chained_service(task_input, tools):
    return tools.service("database").echo(task_input["value"])


def nested_parent(task_input, tools):
    child_result = tools.run_task("sequential")
    return {"child": child_result, "own": tools.call("database", "echo", "done")}


def nested_failing_parent(task_input, tools):
    return tools.run_task("failing")


def nested_unknown(task_input, tools):
    return tools.run_task("missing-task")


def unknown_service(task_input, tools):
    return tools.call("mailer", "send", "hello")


TASK_BODIES = {
    "sequential": sequential,
    "failing": failing,
    "no_calls": no_calls,
    "raises": raises,
    "swallows_exceptions": swallows_exceptions,
    "chained_service": chained_service,
    "nested_parent": nested_parent,
    "nested_failing_parent": nested_failing_parent,
    "nested_unknown": nested_unknown,
    "unknown_service": unknown_service,
}
