import os
import signal

import git
import pytest

import credmatch.cli
from credmatch import __version__, api


def test_version(invoke):
    assert invoke('version').stdout == f"credmatch {__version__}\n"


def test_store_and_fetch(here, passphrase):
    here('store', 'FOO', 'bar', passphrase)
    result = here('fetch', 'FOO', passphrase)
    assert result.stdout == 'bar\n'
    assert 'bar' not in result.stderr


def test_value_with_unicode_line_separator(here, passphrase):
    here('store', 'FOO', 'a\u2028b', passphrase)
    here('store', 'BAR', 'baz', passphrase)
    assert here('fetch', 'FOO', passphrase).stdout == 'a\u2028b\n'
    assert here('fetch', 'BAR', passphrase).stdout == 'baz\n'


def test_store_replaces_value(here, passphrase):
    here('store', 'FOO', 'bar', passphrase)
    here('store', 'FOO', 'baz', passphrase)
    assert here('list', passphrase).stdout.splitlines() == ['FOO=baz']


def test_list(here, passphrase):
    here('store', 'GITHUB_TOKEN', 'ghp_example', passphrase)
    here('store', 'DATABASE_URL', 'postgres://user:pw@host/db?ssl=true', passphrase)
    assert here('list', passphrase).stdout.splitlines() == [
        'GITHUB_TOKEN=ghp_example',
        'DATABASE_URL=postgres://user:pw@host/db?ssl=true',
    ]


def test_list_fresh_store(here):
    result = here('list')
    assert result.stdout == ''
    assert 'No credentials stored' in result.stderr


def test_fetch_missing(here, passphrase):
    here('store', 'FOO', 'bar', passphrase)
    result = here('fetch', 'MISSING', passphrase, exit_code=4)
    assert 'No credential named MISSING' in result.stderr
    assert result.stdout == ''


@pytest.mark.parametrize('arguments', [
    ('store', 'FOO', 'bar', 'some-password'),
    ('fetch', 'FOO', 'some-password'),
    ('list', 'some-password'),
    ('sync',),
    ('status',),
], ids=lambda arguments: arguments[0])
def test_not_initialized(invoke, arguments):
    result = invoke(*arguments, exit_code=1)
    assert 'No credential store' in result.stderr
    assert 'Traceback' not in result.output


def test_not_initialized_in_git_working_tree(workspace, invoke):
    git.Repo.init(workspace)
    assert 'No credential store' in invoke('list', exit_code=1).stderr


@pytest.mark.parametrize('arguments,message', [
    (('store',), 'Usage: credmatch store'),
    (('store', 'FOO'), 'Usage: credmatch store'),
    (('fetch',), 'Usage: credmatch fetch'),
    (('init',), 'Missing repository URL'),
], ids=['store', 'store-key', 'fetch', 'init'])
def test_missing_arguments(invoke, arguments, message):
    assert message in invoke(*arguments, exit_code=1).stderr


def test_unknown_command(invoke):
    assert 'No such command' in invoke('frobnicate', exit_code=1).stderr


@pytest.mark.parametrize('key,value', [
    ('A=B', 'value'),
    ('FOO', 'multi\nline'),
], ids=['key', 'value'])
def test_invalid_credential(here, passphrase, key, value):
    here('store', key, value, passphrase, exit_code=3)
    assert not (here.directory / 'credentials.enc').exists()


def test_new_store_rejects_short_password(here):
    result = here('store', 'FOO', 'bar', 'short', exit_code=3)
    assert 'at least 8 characters' in result.stderr


def test_wrong_password(here, passphrase):
    here('store', 'FOO', 'bar', passphrase)
    result = here('fetch', 'FOO', 'incorrect horse', exit_code=1)
    assert 'Could not decrypt credentials' in result.stderr
    assert 'incorrect horse' not in result.output
    assert result.stdout == ''


def test_wrong_password_does_not_change_store(here, passphrase):
    here('store', 'FOO', 'bar', passphrase)
    before = (here.directory / 'credentials.enc').read_text()
    here('store', 'BAR', 'baz', 'incorrect horse', exit_code=1)
    assert (here.directory / 'credentials.enc').read_text() == before
    assert len(list(git.Repo(here.directory).iter_commits())) == 1


def test_prompt_for_password(here):
    here('store', 'FOO', 'bar', input='password123\npassword123\n')
    result = here('fetch', 'FOO', input='password123\n')
    assert result.stdout.strip() == 'bar'
    assert 'Master password' in result.stderr
    assert 'password123' not in result.output


def test_password_argument_warns(here, passphrase, caplog):
    here('store', 'FOO', 'bar', passphrase)
    assert 'Passing the master password as an argument' in caplog.text
    assert passphrase not in caplog.text


def test_failed_write_keeps_last_good_store(here, passphrase, monkeypatch):
    here('store', 'FOO', 'bar', passphrase)

    def fail(*args, **kwargs):
        raise OSError(28, 'No space left on device')

    with monkeypatch.context() as patch:
        patch.setattr(os, 'replace', fail)
        result = here('store', 'FOO', 'baz', passphrase, exit_code=1)

    assert 'Could not write credentials.enc' in result.stderr
    assert here('fetch', 'FOO', passphrase).stdout == 'bar\n'


def test_init_here_requires_git(invoke):
    assert 'is not a git working tree' in invoke('init-here', exit_code=1).stderr


def test_init_here_twice(here):
    here('init-here')


def test_status_fresh_store(here):
    lines = here('status').stdout.splitlines()
    assert 'Mode:         current-directory' in lines
    assert 'Credentials:  none stored yet' in lines
    assert 'Remote:       none' in lines
    assert 'Last commit:  none' in lines


def test_status(here, passphrase):
    here('store', 'FOO', 'bar', passphrase)
    lines = here('status').stdout.splitlines()
    assert 'Credentials:  present' in lines
    assert 'Working tree: clean' in lines
    assert any(line.startswith('Last commit:') and 'Update credential FOO' in line for line in lines)


def test_sigterm_interrupts(here):
    previous = signal.getsignal(signal.SIGTERM)
    try:
        here('status')
        assert signal.getsignal(signal.SIGTERM) is credmatch.cli.interrupt
        with pytest.raises(KeyboardInterrupt):
            credmatch.cli.interrupt(signal.SIGTERM, None)
    finally:
        signal.signal(signal.SIGTERM, previous)


def test_api(here, passphrase):
    api.store(here.directory, 'FOO', 'bar', passphrase, iterations=1000)
    api.store(here.directory, 'BAR', 'baz', passphrase, iterations=1000)
    assert api.fetch(here.directory, 'FOO', passphrase) == 'bar'
    assert api.entries(here.directory, passphrase) == {'FOO': 'bar', 'BAR': 'baz'}
