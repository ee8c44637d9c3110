"""
Muffliato keeps a team's secret files encrypted in a git repository.

Any file with '.env' in its name is a plaintext secret. It is sealed into a
sibling with '.muffliato' appended, and only that sibling is committed:

\b
    .env            ->  .env.muffliato
    config/prod.env ->  config/prod.env.muffliato

Every device has its own keypair. The project key that seals the files is
wrapped for each device that has access, and the wrapped keys and public keys
are committed in the '.muffliato/' directory.

Set up a project and encrypt its secrets:

\b
    $ muffliato init --email you@example.com
    $ muffliato encrypt

Join a project from a new machine, then have a teammate grant access:

\b
    $ muffliato create --email you@example.com
    $ git add .muffliato && git commit && git push
    (teammate) $ muffliato register you@example.com

Remove someone and re-key everything they could read:

\b
    $ muffliato revoke them@example.com

Check the project for problems:

\b
    $ muffliato doctor
"""

__version__ = '1.0.0'
