# repogit

`repogit` drives the `git` command line to work with remote repositories. It
can set up a local copy, fetch, check out revisions, resolve branch and tag
names to commit SHAs, list files, and commit and push changes. It needs `git`
on the `PATH`. LFS operations also need `git-lfs`.

## Installation

```
pip install repogit
```

## Working with a repository

```python
from repogit.client import CommitOptions, new_client

client = new_client("https://git.example.com/team/app.git")
client.init()
client.fetch("")
sha = client.ls_remote("HEAD")
client.checkout(sha, submodule_enabled=False)

meta = client.revision_metadata(sha)
print(meta.author, meta.date, meta.message)

client.config("Updater", "updater@example.com")
client.add("values.yaml")
client.commit("", CommitOptions(commit_message_text="Bump image tag"))
client.push("origin", "main", force=False)
```

### Creating a client

`new_client` creates the working directory below the system temporary
directory. The directory name comes from the normalised repository URL, with
`/` and `:` replaced by `_`. `new_client` raises `InvalidRepoURLError` when
the URL cannot be normalised. For a working directory of your own choice,
construct `GitClient(repo_url, root, ...)` directly.

`GitClient` takes these optional arguments:

- `env`: extra environment variables for credentialed commands and for
  listing the remote. If `GIT_FORCE_BASIC_AUTH_HEADER` is among them, git is
  told to send it as `http.extraHeader`.
- `insecure`: for https URLs, sets `GIT_SSL_NO_VERIFY=true`.
- `proxy`: sets the `http_proxy` and `https_proxy` variables, in both lower
  and upper case.
- `enable_lfs`: fetches and checks out LFS content when the repository has
  large files.
- `event_handlers`: an `EventHandlers` with `on_fetch` and `on_ls_remote`
  callbacks. Each callback takes the repository URL and returns a function
  that is called when the operation ends.
- `retry_policy`, `gnupg_home` and `command_timeout`.

Every git command runs with `HOME=/dev/null`, `GIT_LFS_SKIP_SMUDGE=1` and
`GIT_TERMINAL_PROMPT=false`. A failing command raises `GitError`, and the
command's standard output is kept in its `output` attribute.

### Client operations

- `fetch(revision)` fetches with tags, `--force` and `--prune`.
  `shallow_fetch(revision, depth)` fetches with a limited history depth.
- `checkout(revision, submodule_enabled)` force-checks out the revision. An
  empty revision or `HEAD` means `origin/HEAD`. It then updates submodules if
  asked and runs `git clean -ffdx`. `submodule()` syncs and updates the
  submodules recursively.
- `ls_remote(revision)` resolves a branch, a tag, a symbolic reference such as
  `HEAD`, or a full 40-character SHA to a commit SHA.
  - A truncated SHA of at least seven hex digits that matches no ref name is
    returned unchanged.
  - Errors that look transient (timeouts, connection resets, HTTP 429 or 500)
    are retried.
  - `RetryPolicy.from_env` reads the retry settings from
    `ARGOCD_GIT_ATTEMPTS_COUNT`, `ARGOCD_GIT_RETRY_DURATION`,
    `ARGOCD_GIT_RETRY_MAX_DURATION` and `ARGOCD_GIT_RETRY_FACTOR`.
  - Durations are written like `250ms` or `1m30s`.
- `ls_refs()` returns a `Refs` with sorted `branches` and `tags`.
- `ls_files(path, enable_new_git_file_globbing)` lists tracked files through
  `git ls-files`. With the new globbing it matches on the file system instead,
  and drops files whose real path lies outside the repository.
- `ls_large_files()` lists the files that `git lfs ls-files` reports.
- `commit_sha()` returns the SHA of `HEAD`.
- `revision_metadata(revision)` returns a `RevisionMetadata` with author,
  date (UTC), the tags that point at the revision, and the message.
- `changed_files(revision, target_revision)` lists the paths that differ
  between two full SHAs.
- `is_annotated_tag(revision)` reports whether `git describe --exact-match`
  finds a tag for the revision.
- `verify_commit_signature(revision)` runs `git-verify-wrapper.sh`, which must
  be on the `PATH`.
- Writing:
  - `add(path)` stages a path.
  - `commit(path_spec, opts)` commits. An empty path spec or `*` commits all
    pending changes. `CommitOptions` sets the message text or message file,
    the signing key and method, and sign-off. Without a message the commit
    message is "Update parameters".
  - `branch(source, target)` creates a branch.
  - `push(remote, branch, force)` pushes.
  - `config(username, email)` sets the commit identity.
  - `sym_ref_to_branch(sym_ref)` returns origin's default branch.

`check_repo(repo, ...)` creates a client and returns the SHA of the remote's
`HEAD`. It raises an error when the remote cannot be reached.

## Repository URLs

```python
from repogit.urls import is_commit_sha, is_ssh_url, normalize_git_url, same_url

same_url("git@example.com:team/app", "ssh://git@example.com/team/app.git")  # True
is_ssh_url("git@example.com:team/app.git")  # (True, "git")
is_commit_sha("9d921f65f3c5373b682e2eb4b37afba6592e8f8b")  # True
```

`normalize_git_url` does the following:

- lower-cases the URL and strips surrounding whitespace;
- rewrites scp-like SSH addresses;
- drops a trailing `.git`.

It returns `""` for a URL it cannot parse. `is_truncated_commit_sha`,
`is_https_url`, `is_http_url` and `ensure_prefix` complete the module.

## Lower-level helpers

- `repogit.refs`
  - `parse_ls_remote` turns the output of `git ls-remote --symref` into
    `Reference` values.
  - `list_remote` runs that command against a URL.
  - `sort_refs` collects branch and tag names into `Refs`.
  - `resolve_revision` resolves a revision against a list of references.
- `repogit.ssh.PublicKeysWithOptions` describes SSH public key authentication:
  the user, the identity file, the key exchange algorithms, and host key
  checking. `client_config()` returns the effective settings, and
  `ssh_command()` renders a command line suitable for `GIT_SSH_COMMAND`.
- `repogit.display`
  - `format_interval` renders a `timedelta` or a number of seconds as, for
    example, `1m0s`, and zero as `once`.
  - `format_health_port` renders zero as `off`.

## What it does not do

`repogit` is a library only: it installs no command. It does not cache
references and does not store credentials or serve them to git. Credentials
reach git only through the environment variables you pass as `env`.