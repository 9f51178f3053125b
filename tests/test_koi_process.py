import pytest

from koi.koi_datatypes import CmdOperator, SpawnFailure, EngineInvariantViolation
from koi.koi_process import Leaf, PipeJoin, CondJoin, should_spawn_rhs, status_ok
from koi.koi_streams import Stream

MISSING = "koi-test-no-such-program"


def leaf(*argv, stdin=None, stdout=None, stderr=None):
    return Leaf(argv[0], list(argv[1:]),
                stdin or Stream.null(), stdout or Stream.inherit(), stderr or Stream.inherit())


async def run(process):
    await process.spawn()
    return await process.wait()


@pytest.mark.parametrize("op, status, expected", [
    (CmdOperator.SEQ, 0, True),
    (CmdOperator.SEQ, 1, True),
    (CmdOperator.AND, 0, True),
    (CmdOperator.AND, 1, False),
    (CmdOperator.OR, 0, False),
    (CmdOperator.OR, 2, True),
    (CmdOperator.AND, -9, False),
])
def test_branch_decision_table(op, status, expected):
    assert should_spawn_rhs(op, status) is expected


def test_pipe_is_not_a_branch_operator():
    with pytest.raises(EngineInvariantViolation):
        should_spawn_rhs(CmdOperator.PIPE, 0)


def test_status_ok():
    assert status_ok(0)
    assert not status_ok(1)
    assert not status_ok(-15)


# --- Leaf ---

@pytest.mark.asyncio
async def test_leaf_reports_exit_status():
    assert await run(leaf("true")) == 0
    assert await run(leaf("false")) == 1
    assert await run(leaf("sh", "-c", "exit 3")) == 3


@pytest.mark.asyncio
async def test_leaf_inherits_stdout(capfd):
    await run(leaf("echo", "hello", "world"))
    assert capfd.readouterr().out == "hello world\n"


@pytest.mark.asyncio
async def test_leaf_null_stdin_reads_eof(capfd):
    # cat on /dev/null exits immediately with no output
    assert await run(leaf("cat")) == 0
    assert capfd.readouterr().out == ""


@pytest.mark.asyncio
async def test_leaf_argv_only_before_spawn():
    p = leaf("echo", "a", "b")
    assert p.argv == ["echo", "a", "b"]
    assert not p.spawned
    await p.spawn()
    assert p.spawned
    with pytest.raises(EngineInvariantViolation):
        p.argv
    await p.wait()


@pytest.mark.asyncio
async def test_leaf_double_spawn_is_detected():
    p = leaf("true")
    await p.spawn()
    with pytest.raises(EngineInvariantViolation):
        await p.spawn()
    assert await p.wait() == 0


@pytest.mark.asyncio
async def test_leaf_wait_before_spawn_is_detected():
    p = leaf("true")
    with pytest.raises(EngineInvariantViolation):
        await p.wait()
    p.discard()


@pytest.mark.asyncio
async def test_leaf_spawn_failure_releases_streams():
    reader, writer = Stream.pipe()
    p = Leaf(MISSING, [], reader, Stream.inherit(), Stream.inherit())
    with pytest.raises(SpawnFailure) as exc:
        await p.spawn()
    assert exc.value.program == MISSING
    assert reader.closed
    writer.close()


@pytest.mark.asyncio
async def test_leaf_streams_closed_in_parent_after_spawn():
    reader, writer = Stream.pipe()
    p = leaf("true", stdout=writer)
    await p.spawn()
    assert writer.closed
    await p.wait()
    reader.close()


def test_discard_releases_streams_once():
    reader, writer = Stream.pipe()
    p = leaf("cat", stdin=reader, stdout=writer)
    p.discard()
    p.discard()
    assert reader.closed and writer.closed


# --- PipeJoin ---

def pipeline(lhs_argv, rhs_argv, stdout=None):
    reader, writer = Stream.pipe()
    lhs = leaf(*lhs_argv, stdout=writer, stderr=Stream.null())
    rhs = leaf(*rhs_argv, stdin=reader, stdout=stdout)
    return PipeJoin(lhs, rhs)


@pytest.mark.asyncio
async def test_pipe_connects_stdout_to_stdin(capfd):
    assert await run(pipeline(["echo", "hi"], ["tr", "h", "y"])) == 0
    assert capfd.readouterr().out == "yi\n"


@pytest.mark.asyncio
async def test_pipe_consumer_reads_everything_then_eof(capfd):
    await run(pipeline(["printf", "a\\nb\\nc\\n"], ["wc", "-l"]))
    assert capfd.readouterr().out.strip() == "3"


@pytest.mark.asyncio
async def test_pipe_carries_more_than_the_pipe_buffer(capfd):
    # Far beyond the 64 KiB kernel buffer, so the producer blocks until the consumer drains it.
    assert await run(pipeline(["head", "-c", "1000000", "/dev/zero"], ["wc", "-c"])) == 0
    assert capfd.readouterr().out.strip() == "1000000"


@pytest.mark.asyncio
async def test_pipe_status_is_the_consumers():
    assert await run(pipeline(["sh", "-c", "exit 7"], ["cat"], stdout=Stream.null())) == 0
    assert await run(pipeline(["true"], ["false"])) == 1


@pytest.mark.asyncio
async def test_pipe_discards_producer_stderr(capfd):
    await run(pipeline(["sh", "-c", "echo oops >&2; echo ok"], ["cat"]))
    captured = capfd.readouterr()
    assert captured.out == "ok\n"
    assert "oops" not in captured.err


@pytest.mark.asyncio
async def test_pipe_producer_spawn_failure_releases_consumer():
    reader, writer = Stream.pipe()
    lhs = Leaf(MISSING, [], Stream.null(), writer, Stream.null())
    rhs = leaf("cat", stdin=reader)
    with pytest.raises(SpawnFailure):
        await PipeJoin(lhs, rhs).spawn()
    assert reader.closed and writer.closed


@pytest.mark.asyncio
async def test_pipe_consumer_spawn_failure_reaps_producer():
    reader, writer = Stream.pipe()
    lhs = leaf("echo", "hi", stdout=writer, stderr=Stream.null())
    rhs = Leaf(MISSING, [], reader, Stream.inherit(), Stream.inherit())
    with pytest.raises(SpawnFailure):
        await PipeJoin(lhs, rhs).spawn()
    assert reader.closed and writer.closed


# --- CondJoin ---

@pytest.mark.asyncio
async def test_seq_runs_both_in_order(capfd):
    p = CondJoin(CmdOperator.SEQ, leaf("echo", "a"), leaf("sh", "-c", "echo b; exit 2"))
    assert await run(p) == 2
    assert capfd.readouterr().out == "a\nb\n"


@pytest.mark.asyncio
async def test_and_skips_rhs_on_failure(capfd):
    p = CondJoin(CmdOperator.AND, leaf("false"), leaf("echo", "unreachable"))
    assert await run(p) == 1
    assert capfd.readouterr().out == ""


@pytest.mark.asyncio
async def test_and_runs_rhs_on_success(capfd):
    p = CondJoin(CmdOperator.AND, leaf("true"), leaf("echo", "yes"))
    assert await run(p) == 0
    assert capfd.readouterr().out == "yes\n"


@pytest.mark.asyncio
async def test_or_runs_rhs_on_failure(capfd):
    p = CondJoin(CmdOperator.OR, leaf("false"), leaf("echo", "fallback"))
    assert await run(p) == 0
    assert capfd.readouterr().out == "fallback\n"


@pytest.mark.asyncio
async def test_or_skips_rhs_on_success_and_releases_it(capfd):
    reader, writer = Stream.pipe()
    rhs = leaf("cat", stdin=reader)
    p = CondJoin(CmdOperator.OR, leaf("true"), rhs)
    assert await run(p) == 0
    assert reader.closed
    assert not rhs.spawned
    writer.close()


@pytest.mark.asyncio
async def test_nested_chain(capfd):
    # (false || echo recovered) && echo after
    inner = CondJoin(CmdOperator.OR, leaf("false"), leaf("echo", "recovered"))
    p = CondJoin(CmdOperator.AND, inner, leaf("echo", "after"))
    assert await run(p) == 0
    assert capfd.readouterr().out == "recovered\nafter\n"


@pytest.mark.asyncio
async def test_cond_double_spawn_and_early_wait_are_detected():
    p = CondJoin(CmdOperator.SEQ, leaf("true"), leaf("true"))
    with pytest.raises(EngineInvariantViolation):
        await p.wait()
    await p.spawn()
    with pytest.raises(EngineInvariantViolation):
        await p.spawn()
    assert await p.wait() == 0


@pytest.mark.asyncio
async def test_cond_lhs_spawn_failure_releases_rhs():
    reader, writer = Stream.pipe()
    rhs = leaf("cat", stdin=reader)
    p = CondJoin(CmdOperator.SEQ, Leaf(MISSING, [], Stream.null(), Stream.inherit(), Stream.inherit()), rhs)
    with pytest.raises(SpawnFailure):
        await p.spawn()
    assert reader.closed
    writer.close()


@pytest.mark.asyncio
async def test_cond_rhs_spawn_failure_surfaces_on_wait():
    p = CondJoin(CmdOperator.SEQ, leaf("true"), Leaf(MISSING, [], Stream.null(), Stream.inherit(), Stream.inherit()))
    await p.spawn()
    with pytest.raises(SpawnFailure):
        await p.wait()
