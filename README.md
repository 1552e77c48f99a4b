# composeapps

Building blocks for handling Docker Compose Apps that arrive with an update
target: parsing App URIs, downloading and checking App manifests and archives
from a Docker registry, asking dockerd which compose services are running,
reading `docker-compose.yml` files, checking out Apps and images kept in an
ostree repository, and telling the bootloader about updates.

An App is named by a registry URI of the form
`<registry-host>/<factory>/<app>@sha256:<64 hex digits>`.

## Installing

```
pip install composeapps
```

To run the test suite, install the extra `test` as well:

```
pip install "composeapps[test]"
```

## Modules

### `composeapps.docker`

- `HashedDigest(hash_digest)` accepts only `sha256:` digests with a 64-character
  hash (case is folded to lower) and raises `ValueError` otherwise. It exposes
  `digest`, `hash` and `short_hash` (the first 7 hex digits).
- `Uri.parse(uri)` splits an App URI into `digest`, `app`, `factory`, `repo`
  (`<factory>/<app>`) and `registry_hostname`, raising `ValueError` when a part
  is missing. `Uri.with_digest(digest)` returns the same location with another
  digest.
- `RegistryClient(treehub_endpoint, ota_lite_client, http_client_factory)`
  gets registry credentials from `<treehub base>/hub-creds/` (or a built-in
  default endpoint when none can be derived), exchanges them for a bearer token
  at `https://<registry>/token-auth/`, and then:
  - `get_app_manifest(uri, format)` downloads a manifest of at most 2048 bytes,
    checks its SHA-256 against the URI's digest and returns the parsed JSON;
  - `download_blob(uri, filepath, expected_size)` streams a blob to a file,
    refusing more data than expected, and deletes the file if its size or
    SHA-256 does not match.
  Every failure raises `RegistryError`.
- `HttpResponse` holds `body`, `status_code` and `error`, with `is_ok`,
  `status_str`, `text` and `json()`.
- `RequestsHttpClient(headers)` is the default HTTP client, built by
  `default_http_client_factory(headers)` from `"name: value"` header strings.
  Any object with `get(url, maxsize)` and `download(url, write_cb)` returning
  `HttpResponse` can take its place.

### `composeapps.dockerclient`

`DockerClient(http_client=None)` queries `/containers/json` on dockerd (by
default over `/var/run/docker.sock`). `service_running(app, service, hash)` is
true when a container carries the compose project, service and
`io.compose-spec.config-hash` labels given. If dockerd gives no answer,
`DockerError` is raised; an empty container list is simply "not running".

### `composeapps.composeinfo`

`ComposeInfo(path)` reads a compose file. `services()` returns the service
names in sorted order; `image(service)` and `hash(service)` return the image and
the `io.compose-spec.config-hash` label, or `""` when absent.

### `composeapps.composeapptree`

`parse_tree_uri(uri)` splits `<branch>@<commit>` and raises `ValueError` without
an `@`. `ComposeAppTree(repo, apps_dir, images_dir)` works over an ostree
repository object offering `add_remote`, `pull` and `checkout`:

- `pull(remote_url, key_manager, uri)` registers the remote `treehub` using the
  key manager's `ca_file`, `cert_file` and `pkey_file`, then pulls the commit;
- `checkout(uri)` checks out `/apps` into `apps_dir` and `/images` into
  `images_dir`, then recreates the device nodes and other non-regular files
  listed in `/.whiteouts` (`<path> <mode> <device>` per line).

### `composeapps.rollback`

`make_rollback(mode)` returns the strategy for a `RollbackMode`:

| Mode | Class | Tools used |
| --- | --- | --- |
| `BOOTLOADER_NONE` | `Rollback` | none |
| `UBOOT_GENERIC` | `GenericRollback` | `fw_setenv` |
| `UBOOT_MASKED` | `MaskedRollback` | `fw_setenv`, `fw_printenv` |
| `FIOVB` | `FiovbRollback` | `fiovb_setenv`, `fiovb_printenv` |
| anything else | `ExceptionRollback` | every call raises `NotImplementedError` |

Each strategy has `set_boot_ok()`, `update_notify()` and
`install_notify(target_hash)`; failing commands are logged as warnings.
`install_notify` on the masked and fiovb strategies reads the boot firmware
version shipped in the deployed target (`get_version`) and sets
`bootupgrade_available` when it differs from the current one.
`BootloaderLite(mode)` forwards the same three calls to the strategy for `mode`.

## Example

```python
from composeapps.docker import RegistryClient, Uri
from composeapps.composeinfo import ComposeInfo
from composeapps.dockerclient import DockerClient

uri = Uri.parse("hub.example.com/factory/app-01@sha256:" + "0" * 64)
print(uri.app, uri.repo, uri.digest.short_hash)  # app-01 factory/app-01 0000000

registry = RegistryClient("https://ota.example.com/treehub", ota_client)
manifest = registry.get_app_manifest(uri, "application/vnd.oci.image.manifest.v1+json")

info = ComposeInfo("/var/sota/compose-apps/app-01/docker-compose.yml")
docker = DockerClient()
running = all(docker.service_running(uri.app, s, info.hash(s)) for s in info.services())
```

Here `ota_client` is an HTTP client with a `get(url, maxsize)` method that is
authorised against the device gateway.

## What this package does not do

It does not itself drive `docker-compose` to fetch, create, start or stop Apps,
and it does not decide which Apps of a target should be installed, updated or
removed. There is no command-line program and no daemon; the pieces above are
meant to be called from code that manages updates.