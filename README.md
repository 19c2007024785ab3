# tunnelrules

Restriction rules for a tunnel server: which clients may open which tunnels,
loaded from YAML and optionally reloaded whenever the file changes on disk.
A small helper for setting the Linux socket mark is included.

## Installation

```
pip install tunnelrules
```

## Rule files

A rules file holds a list of restrictions. Each one has a `name`, a list of
`match` conditions (it must not be empty) and a list of `allow` entries.
Variants are written as YAML tags or as single-key mappings:

```yaml
restrictions:
  - name: "Allow tunnels under /app"
    match:
      - !PathPrefix "^/app$"
    allow:
      - !Tunnel
        protocol: [Tcp]
        port: ["443", "8000..8100"]
        host: "^example\\.com$"
      - !ReverseTunnel
        protocol: [Tcp, Udp]
        port: ["9000"]
        port_mapping: ["9000:22"]
```

Match conditions are `Any`, `PathPrefix <regex>` and `Authorization <regex>`.
`Tunnel` protocols are `Tcp`, `Udp` and `Unknown`; `ReverseTunnel` protocols
are `Tcp`, `Udp`, `Socks5`, `Unix`, `HttpProxy` and `Unknown`.

Ports are written as `"443"` or as an inclusive range `"8000..8100"` and are
loaded as Python `range` objects. Port mappings are written as
`"original:target"`. When a `Tunnel` entry leaves out `host`, it defaults to
`^.*$`. When an entry leaves out `cidr`, it defaults to `0.0.0.0/0` and `::/0`.
Leaving out `protocol` or `port` gives an empty list.

## Loading rules

```python
from tunnelrules.restrictions import RestrictionsRules

rules = RestrictionsRules.from_config_file("restrictions.yaml")
rules = RestrictionsRules.from_yaml(text)
rules = RestrictionsRules.from_value(already_loaded_document)
```

Malformed rules raise `RestrictionError` (a `ValueError`). The helpers
`parse_port_ranges`, `parse_port_mapping` and `parse_allow_config` are also
available on their own.

### Rules from path prefixes

```python
rules = RestrictionsRules.from_path_prefix(["/app"], [("example.com", 443)])
```

- With no path prefixes, one restriction named `Allow All` matching `Any` is
  built; otherwise one restriction per prefix, named
  `Allow path prefix <prefix>`, matching the escaped prefix exactly.
- With no destinations, every tunnel and reverse tunnel is allowed.
- A destination given as an IP address allows only that address (a `/32` or
  `/128` network) with an empty host pattern `^$`; a host name allows only
  that exact name and no networks. Each destination allows only its port.

## Live reload

```python
from tunnelrules.restrictions import RestrictionsRules
from tunnelrules.config_reloader import RestrictionsRulesReloader

rules = RestrictionsRules.from_config_file("restrictions.yaml")
with RestrictionsRulesReloader(rules, "restrictions.yaml") as reloader:
    current = reloader.restrictions_rules()   # the latest good rules
```

The file must exist when the reloader is created, otherwise
`FileNotFoundError` is raised. When the file is created, modified or moved
into place, it is read again; if the new contents are invalid, the previous
rules are kept and the error is logged. If the file is removed, the reloader
checks for it every `rewatch_interval` seconds (default 10), watches it again
once it is back and reloads it. `reload_restrictions_config()` forces a reload
and `close()` stops watching. Without a path, the rules stay fixed.

## Socket marks

```python
from tunnelrules.somark import SoMark

SoMark(42).set_mark(sock)
```

`SoMark` takes an optional mark between 0 and 2**32 - 1 (anything else raises
`ValueError`). `set_mark` sets `SO_MARK` on the socket on Linux and raises
`OSError` if the system refuses it. On other platforms, and when no mark is
given, it does nothing.

## What this package does not do

It only describes and loads rules. It does not check requests or connections
against them, and it contains no tunnel server, client or command-line tool.