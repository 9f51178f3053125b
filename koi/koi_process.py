"""
The Koi process engine.

A command statement is lowered into a tree of Process plans before anything
runs. `spawn()` starts the tree depth-first and `wait()` collapses it to one
exit status:

  - Leaf:     one program. Unspawned(spec) -> Running(handle), exactly once.
  - PipeJoin: lhs | rhs, already wired through one OS pipe by the builder.
  - CondJoin: lhs ; rhs, lhs && rhs, lhs || rhs. Spawning starts lhs inline
              and hands the (lhs, rhs) pair to a background asyncio.Task that
              decides whether rhs runs once lhs has finished.

A tree is single-use. Every Stream bound into a node is either consumed by a
spawn or released by `discard()`, so no pipe descriptor outlives its process
in the parent.
"""
import asyncio
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from koi.koi_datatypes import CmdOperator, SpawnFailure, EngineInvariantViolation
from koi.koi_streams import Stream


def dbg(*parts):
    if os.environ.get("KOI_DEBUG"):
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


def status_ok(status: int) -> bool:
    return status == 0


def should_spawn_rhs(op: CmdOperator, lhs_status: int) -> bool:
    """Branch decision for a conditional chain, given the left side's exit status."""
    match op:
        case CmdOperator.SEQ:
            return True
        case CmdOperator.AND:
            return status_ok(lhs_status)
        case CmdOperator.OR:
            return not status_ok(lhs_status)
    raise EngineInvariantViolation(f"{op!r} is not a conditional operator")


class Process(ABC):
    """An execution plan for one command tree node."""

    @abstractmethod
    async def spawn(self) -> None: ...

    @abstractmethod
    async def wait(self) -> int: ...

    @abstractmethod
    def discard(self) -> None:
        """Releases the streams of a plan that will never be spawned."""


# =================================================================
# Leaf
# =================================================================

@dataclass
class Unspawned:
    program: str
    args: List[str]
    stdin: Stream
    stdout: Stream
    stderr: Stream

    def streams(self) -> Tuple[Stream, Stream, Stream]:
        return self.stdin, self.stdout, self.stderr


@dataclass
class Running:
    program: str
    handle: asyncio.subprocess.Process


@dataclass
class Released:
    program: str


class Leaf(Process):
    def __init__(self, program: str, args: List[str], stdin: Stream, stdout: Stream, stderr: Stream):
        self.state: Union[Unspawned, Running, Released] = Unspawned(program, list(args), stdin, stdout, stderr)

    @property
    def argv(self) -> List[str]:
        match self.state:
            case Unspawned(program=program, args=args):
                return [program, *args]
        raise EngineInvariantViolation("argv is only available before spawn")

    @property
    def spawned(self) -> bool:
        return isinstance(self.state, Running)

    async def spawn(self) -> None:
        spec = self.state
        if not isinstance(spec, Unspawned):
            raise EngineInvariantViolation(f"process already spawned: {spec.program}")
        dbg("spawn", [spec.program, *spec.args], [s.kind.value for s in spec.streams()])
        try:
            handle = await asyncio.create_subprocess_exec(
                spec.program, *spec.args,
                stdin=spec.stdin.to_stdio(),
                stdout=spec.stdout.to_stdio(),
                stderr=spec.stderr.to_stdio(),
            )
        except (OSError, ValueError) as e:
            self.discard()
            raise SpawnFailure(spec.program, e) from e
        finally:
            # The child holds its own copies now.
            for s in spec.streams():
                s.close()
        self.state = Running(spec.program, handle)

    async def wait(self) -> int:
        state = self.state
        if not isinstance(state, Running):
            raise EngineInvariantViolation(f"process not spawned: {state.program}")
        status = await state.handle.wait()
        dbg("exit", state.program, status)
        return status

    def discard(self) -> None:
        spec = self.state
        if isinstance(spec, Unspawned):
            for s in spec.streams():
                s.close()
            self.state = Released(spec.program)

    def __repr__(self) -> str:
        return f"<Leaf {type(self.state).__name__} {self.state.program!r}>"


# =================================================================
# Joins
# =================================================================

class PipeJoin(Process):
    """lhs | rhs. The pipe between them was bound into both sides at build time."""

    def __init__(self, lhs: Process, rhs: Process):
        self.lhs = lhs
        self.rhs = rhs

    async def spawn(self) -> None:
        try:
            await self.lhs.spawn()
        except BaseException:
            self.rhs.discard()
            raise
        try:
            await self.rhs.spawn()
        except SpawnFailure:
            # The read end is gone, so the producer ends on its own; reap it.
            await self.lhs.wait()
            raise

    async def wait(self) -> int:
        # Pipeline status is the last stage's status.
        try:
            await self.lhs.wait()
        except SpawnFailure:
            await self.rhs.wait()
            raise
        return await self.rhs.wait()

    def discard(self) -> None:
        self.lhs.discard()
        self.rhs.discard()

    def __repr__(self) -> str:
        return f"<PipeJoin {self.lhs!r} | {self.rhs!r}>"


class CondJoin(Process):
    """lhs ; rhs, lhs && rhs, lhs || rhs."""

    def __init__(self, op: CmdOperator, lhs: Process, rhs: Process):
        self.op = op
        self.pending: Optional[Tuple[Process, Process]] = (lhs, rhs)
        self.task: Optional[asyncio.Task] = None

    def take_pending(self) -> Tuple[Process, Process]:
        """Hands out the unspawned pair. Only ever succeeds once."""
        if self.pending is None:
            raise EngineInvariantViolation(f"conditional chain ({self.op.value}) already spawned")
        pair, self.pending = self.pending, None
        return pair

    async def spawn(self) -> None:
        lhs, rhs = self.take_pending()
        try:
            await lhs.spawn()
        except BaseException:
            rhs.discard()
            raise
        self.task = asyncio.create_task(self._decide(self.op, lhs, rhs))

    @staticmethod
    async def _decide(op: CmdOperator, lhs: Process, rhs: Process) -> int:
        try:
            lhs_status = await lhs.wait()
        except BaseException:
            rhs.discard()
            raise
        if should_spawn_rhs(op, lhs_status):
            dbg("chain", op.value, "lhs exited", lhs_status, "-> spawning rhs")
            await rhs.spawn()
            return await rhs.wait()
        dbg("chain", op.value, "lhs exited", lhs_status, "-> skipping rhs")
        rhs.discard()
        return lhs_status

    async def wait(self) -> int:
        if self.task is None:
            raise EngineInvariantViolation(f"conditional chain ({self.op.value}) not spawned")
        return await self.task

    def discard(self) -> None:
        if self.pending is not None:
            lhs, rhs = self.take_pending()
            lhs.discard()
            rhs.discard()

    def __repr__(self) -> str:
        state = "pending" if self.pending is not None else "spawned"
        return f"<CondJoin {self.op.value} {state}>"
