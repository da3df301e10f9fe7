"""
Credmatch keeps credentials in a password encrypted file synchronised with git.

Credentials are stored as 'key=value' lines, encrypted with a key derived from
a master password and committed to a git repository, which provides the sync
channel, backup and audit trail. The master password is never stored.

Create a store in its own repository, or use the current git working tree:

\b
    $ credmatch init git@github.com:example/credentials.git
    $ credmatch init-here

Store, fetch and list credentials (the master password is prompted for):

\b
    $ credmatch store GITHUB_TOKEN ghp_example
    $ credmatch fetch GITHUB_TOKEN
    $ credmatch list

Pull remote changes and push local ones, or inspect the store:

\b
    $ credmatch sync
    $ credmatch status
"""

__version__ = '1.0.0'
