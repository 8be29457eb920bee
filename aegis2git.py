#!/usr/bin/env python3
"""
aegis2git.py

Convert the history of an Aegis project branch into a git repository by replaying
every integrated delta, in order, as one git commit.

Usage:
    python3 aegis2git.py [options] project authors

Example:
    python3 aegis2git.py example.1.0 authors.txt --rights rights.txt
    git clone example.git example

The authors file maps Aegis logins to git identities, one per line:

    alice = Alice Example <alice@example.com>

The optional rights file lists modes that Aegis does not record, one per line:

    0755 bin/run.sh

The `aegis` pseudo-user is mapped to the same identity as `root`.
"""
from __future__ import annotations
import argparse
import contextlib
import datetime
import os
import re
import shutil
import subprocess
import sys
import tempfile
from typing import Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional

VERSION = "1.0.0"

SYSTEM_LOGIN = "aegis"
ROOT_LOGIN = "root"
DEFAULT_BRANCH = "1.0"
CHECKOUT_LOG = "aegis.log"

ProgressFn = Callable[[str], None]


# ---------- Errors ----------


class Aegis2GitError(Exception):
    """Base class for fatal conversion errors; `status` is the exit status."""

    status = 1


class ConfigError(Aegis2GitError):
    pass


class IdentityError(Aegis2GitError):
    pass


class ParseError(Aegis2GitError):
    pass


class SubprocessError(Aegis2GitError):
    def __init__(self, cmd: List[str], status: int, stderr: str = "", output: str = ""):
        self.cmd = cmd
        self.status = status
        self.stderr = stderr
        self.output = output
        msg = f"command failed with status {status}: {' '.join(cmd)}"
        if stderr.strip():
            msg += f"\n{stderr.rstrip()}"
        super().__init__(msg)


class OutputExistsError(Aegis2GitError):
    pass


# ---------- Utilities ----------


def run_command(
    cmd: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None
) -> str:
    """Run cmd to completion and return its stdout; raise SubprocessError on non-zero exit."""
    result = subprocess.run(cmd, cwd=cwd, env=env, capture_output=True, text=True)
    if result.returncode != 0:
        raise SubprocessError(cmd, result.returncode, result.stderr or "", result.stdout or "")
    return result.stdout


def parse_aegis_date(s: str) -> datetime.datetime:
    """
    Aegis reports times like `Mon Jan  2 03:04:05 2006` (ctime format).
    Returns a naive datetime in the local time of the Aegis server.
    """
    try:
        return datetime.datetime.strptime(" ".join(s.split()), "%a %b %d %H:%M:%S %Y")
    except ValueError:
        raise ParseError(f"unrecognised timestamp {s!r}") from None


def format_git_date(dt: datetime.datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S")


# ---------- Identities and rights ----------


class AuthorRecord(NamedTuple):
    login: str
    name: str
    email: str

    def __str__(self):
        return f"{self.name} <{self.email}>"


AUTHOR_RE = re.compile(r"^\s*(\S+)\s*=\s*(.*?)\s*<([^<>]+)>\s*$")
RIGHTS_RE = re.compile(r"^\s*([0-7]{3,4})\s+(\S.*?)\s*$")


def load_authors(fn: str) -> Dict[str, AuthorRecord]:
    mapping: Dict[str, AuthorRecord] = {}
    try:
        with open(os.path.expanduser(fn), "r", encoding="utf-8") as f:
            for line in f:
                m = AUTHOR_RE.match(line)
                if not m:
                    continue
                login, name, email = m.groups()
                if login in mapping:
                    sys.stderr.write(f"Warning: login {login} redefined to {name} <{email}>\n")
                mapping[login] = AuthorRecord(login, name, email)
    except OSError as e:
        raise ConfigError(f"cannot read authors file {fn}: {e.strerror}") from None
    # aegis pseudo-user stands in for root
    if SYSTEM_LOGIN not in mapping and ROOT_LOGIN in mapping:
        mapping[SYSTEM_LOGIN] = mapping[ROOT_LOGIN]
    return mapping


def load_permissions(fn: Optional[str] = None) -> Dict[str, int]:
    modes: Dict[str, int] = {}
    if fn is None:
        return modes
    try:
        with open(os.path.expanduser(fn), "r", encoding="utf-8") as f:
            for line in f:
                m = RIGHTS_RE.match(line)
                if m:
                    modes[m.group(2)] = int(m.group(1), 8)
    except OSError as e:
        raise ConfigError(f"cannot read rights file {fn}: {e.strerror}") from None
    return modes


def resolve_author(authors: Dict[str, AuthorRecord], login: str, delta: int) -> AuthorRecord:
    try:
        return authors[login]
    except KeyError:
        raise IdentityError(f"unknown login {login!r} in delta {delta}") from None


# ---------- Deltas ----------


class Delta:
    def __init__(
        self,
        number: int,
        change_id: Optional[str] = None,
        timestamp: Optional[datetime.datetime] = None,
        tag: Optional[str] = None,
    ):
        self.number = number
        self.change_id = change_id
        self.timestamp = timestamp
        self.tag = tag
        self.author: Optional[str] = None
        self.committer: Optional[str] = None
        self.message: str = ""

    @classmethod
    def zero(cls) -> "Delta":
        d = cls(0)
        d.author = SYSTEM_LOGIN
        d.committer = SYSTEM_LOGIN
        d.message = "Delta 0"
        return d

    def __repr__(self):
        return f"<Delta {self.number} change={self.change_id} author={self.author} tag={self.tag}>"


class ChangeDescription(NamedTuple):
    author: str
    committer: str
    message: str


# ---------- Change details ----------


HISTORY_RE = re.compile(r"Developed\s+by\s+(\S+)\..*?Integrated\s+by\s+(\S+)\.", re.DOTALL)
SUMMARY_RE = re.compile(r"^SUMMARY[ \t]*\n((?:\t.*(?:\n|$))+)", re.MULTILINE)


def parse_change_details(text: str) -> ChangeDescription:
    """
    Pull the developer, integrator and summary out of an
    `aegis -list change_details` report.
    """
    m = HISTORY_RE.search(text)
    if not m:
        raise ParseError("change details have no 'Developed by ... Integrated by ...' history")
    author, committer = m.groups()

    s = SUMMARY_RE.search(text)
    if not s:
        raise ParseError("change details have no SUMMARY section")
    lines = [line[1:] for line in s.group(1).splitlines()]
    message = "\n".join(lines).strip()
    # subject line, blank, body
    message = message.replace("\n", "\n\n", 1)
    return ChangeDescription(author, committer, message)


class ChangeDescriber:
    """Callable used by the history parser to fill in one delta's description."""

    def __init__(self, authors: Dict[str, AuthorRecord], project_ref: str, runner=run_command):
        self.authors = authors
        self.project_ref = project_ref
        self.runner = runner

    def query(self, change_id: str) -> str:
        return self.runner(
            ["aegis", "-list", "change_details", "-change", change_id, "-project", self.project_ref]
        )

    def __call__(self, delta: Delta) -> ChangeDescription:
        try:
            desc = parse_change_details(self.query(delta.change_id))
        except ParseError as e:
            raise ParseError(f"delta {delta.number} (change {delta.change_id}): {e}") from None
        resolve_author(self.authors, desc.author, delta.number)
        resolve_author(self.authors, desc.committer, delta.number)
        return desc


# ---------- Project history ----------


TAG_RE = re.compile(r'^\s*Name:\s*"(.*)"\s*$')
DELTA_RE = re.compile(r"^\s*(\d+)\s+(\w{3}\s+\w{3}\s+\d{1,2}\s+\d{1,2}:\d{2}:\d{2}\s+\d{4})\s+(\d+)\b")


class HistoryContext:
    def __init__(self):
        self.pending_tag: Optional[str] = None
        self.last_number = 0


def parse_history_line(
    line: str, ctx: HistoryContext, describe: Callable[[Delta], ChangeDescription]
) -> Optional[Delta]:
    m = TAG_RE.match(line)
    if m:
        if ctx.pending_tag is not None:
            sys.stderr.write(f"Warning: tag {ctx.pending_tag} replaced by {m.group(1)}\n")
        ctx.pending_tag = m.group(1)
        return None
    m = DELTA_RE.match(line)
    if not m:
        return None
    number = int(m.group(1))
    if number <= ctx.last_number:
        raise ParseError(f"delta {number} follows delta {ctx.last_number} in project history")
    ctx.last_number = number
    delta = Delta(number, m.group(3), parse_aegis_date(m.group(2)), ctx.pending_tag)
    ctx.pending_tag = None
    desc = describe(delta)
    delta.author = desc.author
    delta.committer = desc.committer
    delta.message = desc.message
    return delta


def parse_history(
    lines: Iterable[str],
    describe: Callable[[Delta], ChangeDescription],
    progress: Optional[ProgressFn] = None,
) -> List[Delta]:
    deltas = [Delta.zero()]
    ctx = HistoryContext()
    for line in lines:
        delta = parse_history_line(line, ctx, describe)
        if delta is None:
            continue
        deltas.append(delta)
        if progress and (len(deltas) - 1) % 50 == 0:
            progress(f"Read {len(deltas) - 1} deltas")
    if ctx.pending_tag is not None:
        sys.stderr.write(f"Warning: tag {ctx.pending_tag} names no delta, dropped\n")
    return deltas


def read_history(
    project_ref: str,
    describe: Callable[[Delta], ChangeDescription],
    progress: Optional[ProgressFn] = None,
    runner=run_command,
) -> List[Delta]:
    out = runner(["aegis", "-list", "project_history", "-unformatted", "-project", project_ref])
    deltas = parse_history(out.splitlines(), describe, progress)
    if progress:
        progress(f"Read {len(deltas) - 1} deltas")
    return deltas


# ---------- Snapshots ----------


@contextlib.contextmanager
def scratch_directory() -> Iterator[str]:
    path = tempfile.mkdtemp(prefix="aegis2git-")
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def materialize(
    delta: Delta,
    project_ref: str,
    permissions: Dict[str, int],
    scratch: str,
    runner=run_command,
) -> str:
    """
    Fill scratch with the full tree of delta and apply the recorded modes.
    Delta 0 has no content and leaves scratch empty.
    """
    if delta.number == 0:
        return scratch
    runner(
        [
            "aegis",
            "-copy_file",
            "-independent",
            "-delta",
            str(delta.number),
            "-project",
            project_ref,
            ".",
        ],
        cwd=scratch,
    )
    log = os.path.join(scratch, CHECKOUT_LOG)
    if os.path.exists(log):
        os.remove(log)
    for path, mode in permissions.items():
        full = os.path.join(scratch, path)
        if not os.path.lexists(full):
            sys.stderr.write(f"Warning: {path} not present in delta {delta.number}\n")
            continue
        os.chmod(full, mode)
    return scratch


# ---------- Git ----------


class GitRepository:
    def __init__(self, path: str, runner=run_command):
        self.path = os.path.abspath(path)
        self.runner = runner

    def __repr__(self):
        return f"<GitRepository {self.path}>"

    def git(self, *args: str, work_tree: Optional[str] = None, env=None) -> str:
        cmd = ["git", f"--git-dir={self.path}"]
        if work_tree:
            cmd.append(f"--work-tree={work_tree}")
        return self.runner(cmd + list(args), cwd=work_tree, env=env)

    def init(self):
        self.runner(["git", "init", "--bare", "-q", self.path])

    def stage(self, work_tree: str):
        # -A records deletions too, so the index equals the snapshot
        self.git("add", "-A", work_tree=work_tree)

    def commit(
        self,
        work_tree: str,
        message: str,
        author: Optional[AuthorRecord],
        committer: Optional[AuthorRecord],
        date: Optional[datetime.datetime],
        allow_empty: bool = False,
    ):
        env = os.environ.copy()
        if author:
            env["GIT_AUTHOR_NAME"] = author.name
            env["GIT_AUTHOR_EMAIL"] = author.email
        if committer:
            env["GIT_COMMITTER_NAME"] = committer.name
            env["GIT_COMMITTER_EMAIL"] = committer.email
        if date:
            env["GIT_AUTHOR_DATE"] = format_git_date(date)
            env["GIT_COMMITTER_DATE"] = format_git_date(date)
        args = ["commit", "-q", "--no-verify", "--cleanup=verbatim", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        self.git(*args, work_tree=work_tree, env=env)

    def tag(self, name: str):
        self.git("tag", name)


EMPTY_COMMIT_RE = re.compile(r"nothing to commit|no changes added to commit")


def is_empty_commit_rejection(e: SubprocessError) -> bool:
    return bool(EMPTY_COMMIT_RE.search(e.stderr) or EMPTY_COMMIT_RE.search(e.output))


def replay(
    deltas: List[Delta],
    repo: GitRepository,
    authors: Dict[str, AuthorRecord],
    project_ref: str,
    permissions: Dict[str, int],
    progress: Optional[ProgressFn] = None,
    runner=run_command,
):
    repo.init()
    total = len(deltas)
    for idx, delta in enumerate(deltas, 1):
        if delta.number == 0:
            author = authors.get(delta.author)
            committer = authors.get(delta.committer)
        else:
            author = resolve_author(authors, delta.author, delta.number)
            committer = resolve_author(authors, delta.committer, delta.number)
        with scratch_directory() as scratch:
            materialize(delta, project_ref, permissions, scratch, runner)
            repo.stage(scratch)
            try:
                repo.commit(
                    scratch,
                    delta.message,
                    author,
                    committer,
                    delta.timestamp,
                    allow_empty=delta.number == 0,
                )
            except SubprocessError as e:
                if delta.number != 0 or not is_empty_commit_rejection(e):
                    raise
                sys.stderr.write("Warning: empty commit for delta 0 rejected, skipped\n")
        if delta.tag:
            try:
                repo.tag(delta.tag)
            except SubprocessError as e:
                raise ParseError(
                    f"delta {delta.number}: cannot create tag {delta.tag!r}: {e.stderr.strip()}"
                ) from None
        if progress:
            progress(f"Committed delta {delta.number} ({idx}/{total})")


# ---------- CLI ----------


BRANCH_SUFFIX_RE = re.compile(r"^(.+?)\.(\d+(?:\.\d+)*)$")


def split_project(name: str, branch: Optional[str] = None):
    """Return (project, branch), taking the branch from a trailing .N[.N...] when not given."""
    m = BRANCH_SUFFIX_RE.match(name)
    if m:
        name = m.group(1)
        if branch is None:
            branch = m.group(2)
    return name, branch or DEFAULT_BRANCH


def prepare_output(path: str, force: bool):
    if os.path.lexists(path):
        if not force:
            raise OutputExistsError(f"{path} already exists (use --force to overwrite)")
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)


def convert(args) -> int:
    authors = load_authors(args.authors)
    permissions = load_permissions(args.rights)
    project, branch = split_project(args.project, args.branch)
    project_ref = f"{project}.{branch}"
    output = args.output or f"{project}.git"

    def progress(msg: str):
        if not args.quiet:
            sys.stderr.write(msg + "\n")

    prepare_output(output, args.force)
    describe = ChangeDescriber(authors, project_ref)
    deltas = read_history(project_ref, describe, progress)
    repo = GitRepository(output)
    try:
        replay(deltas, repo, authors, project_ref, permissions, progress)
    except BaseException:
        shutil.rmtree(repo.path, ignore_errors=True)
        raise
    progress(f"Imported {len(deltas)} commits into {output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replay the deltas of an Aegis project branch as commits in a new git repository."
    )
    parser.add_argument("project", help="Aegis project name, optionally with a .N[.N...] branch suffix")
    parser.add_argument("authors", help="file with `login = Full Name <email>` mappings")
    parser.add_argument("--rights", "-r", help="file with `mode path` lines applied after each checkout")
    parser.add_argument("--output", "-o", help="git repository to create (default PROJECT.git)")
    parser.add_argument("--branch", "-b", help=f"Aegis branch to import (default {DEFAULT_BRANCH})")
    parser.add_argument("--force", "-f", action="store_true", help="overwrite an existing output")
    parser.add_argument("--quiet", "-q", action="store_true", help="do not report progress")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return convert(args)
    except Aegis2GitError as e:
        sys.stderr.write(f"aegis2git: {e}\n")
        return e.status


if __name__ == "__main__":
    sys.exit(main())
