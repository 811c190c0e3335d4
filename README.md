# nodemetrics

`nodemetrics` reads host statistics from a Linux machine's `/proc` and `/sys`
trees and turns them into metrics that can be rendered in the Prometheus text
exposition format. It uses only the standard library.

## Collectors

Each area of the system has its own module with one collector class. Importing
a module registers its collector, under the name shown, in
`nodemetrics.collector.default_registry`.

| Module                  | Class                | Name        | Enabled by default | Metrics                                                    |
|-------------------------|----------------------|-------------|--------------------|------------------------------------------------------------|
| `nodemetrics.arp`       | `ARPCollector`       | `arp`       | yes                | ARP table entries per device                               |
| `nodemetrics.bcache`    | `BcacheCollector`    | `bcache`    | yes                | bcache cache set, backing and cache device statistics      |
| `nodemetrics.bonding`   | `BondingCollector`   | `bonding`   | yes                | configured and active slaves of bonding interfaces         |
| `nodemetrics.btrfs`     | `BtrfsCollector`     | `btrfs`     | yes                | Btrfs allocation, device size and layout usage             |
| `nodemetrics.buddyinfo` | `BuddyinfoCollector` | `buddyinfo` | no                 | free memory blocks per node, zone and order                |
| `nodemetrics.conntrack` | `ConntrackCollector` | `conntrack` | yes                | netfilter connection tracking entries and statistics       |
| `nodemetrics.cpu`       | `CPUCollector`       | `cpu`       | yes                | CPU time per mode, guest time, CPU info, thermal throttles |
| `nodemetrics.cpufreq`   | `CPUFreqCollector`   | `cpufreq`   | yes                | current, minimum and maximum CPU frequencies               |
| `nodemetrics.diskstats` | `DiskstatsCollector` | `diskstats` | yes                | block device I/O counters                                  |
| `nodemetrics.drbd`      | `DRBDCollector`      | `drbd`      | no                 | DRBD replication state and traffic                         |
| `nodemetrics.drm`       | `DRMCollector`       | `drm`       | no                 | AMD GPU busy percentage and memory use                     |
| `nodemetrics.edac`      | `EdacCollector`      | `edac`      | yes                | correctable and uncorrectable memory errors                |
| `nodemetrics.entropy`   | `EntropyCollector`   | `entropy`   | yes                | available entropy and pool size                            |

Every collector is built from a `Settings` object and has an `update()` method
that yields `Metric` samples. All metric names share the `node_` namespace, for
example `node_cpu_seconds_total` or `node_disk_read_bytes_total`.

The file formats can also be read without a collector:
`parse_arp_entries`, `parse_proc_stat`, `parse_cpuinfo`, `parse_diskstats`,
`parse_buddyinfo`, `parse_conntrack_stat`, `read_conntrack_statistics`,
`read_kernel_random`, `read_bonding_stats`, `read_bcache_stats`,
`read_btrfs_stats`, `read_cpufreq`, `read_amdgpu_stats` and `drbd_metrics`,
each in its collector's module. `nodemetrics.bcache.dehumanize` converts sizes
such as `2.7M` to whole numbers.

## The metric model

`nodemetrics.metrics` holds:

- `ValueType` – `COUNTER`, `GAUGE` or `UNTYPED`.
- `Desc` – a metric's fully qualified name, help text and label names.
- `Metric` – one sample: a `Desc`, a value type, a value and label values.
  It raises `ValueError` when the number of label values does not match the
  label names.
- `TypedDesc` – a `Desc` bound to a value type; `metric(value, *labels)` builds
  a `Metric`.
- `build_fq_name(namespace, subsystem, name)` – joins the non-empty parts with
  `_`; an empty name gives an empty string.
- `format_metrics(metrics)` – renders samples as text with `# HELP` and
  `# TYPE` lines per family, families sorted by name and samples by labels.
  It raises `ValueError` if one name is used with two value types.

## Settings, registry and running collectors

`nodemetrics.collector` holds:

- `Settings` – `proc_path` (default `/proc`) and `sys_path` (default `/sys`),
  with `proc_file(name)` and `sys_file(name)` to resolve paths inside them, so
  collectors can be pointed at a copy of those trees. It also carries
  per-collector options: `arp_device_include`, `arp_device_exclude`,
  `bcache_priority_stats`, `cpu_guest`, `cpu_info`, `cpu_flags_include`,
  `cpu_bugs_include` and `diskstats_ignored_devices`.
- `Registry` – knows collectors by name and whether each is enabled.
  `register(name, default_enabled, factory)` adds one; `set_enabled(name,
  enabled)` sets one explicitly; `disable_defaults()` disables every collector
  not set explicitly; `is_enabled(name)` reports the state; `create(settings,
  filters)` builds a `NodeCollector` from the enabled collectors, restricted
  to the names in `filters` if any are given. A collector is created once per
  registry and reused. Naming an unknown or disabled collector in `filters`
  raises `ValueError`.
- `register_collector(name, default_enabled)` – decorator that adds a
  collector class to `default_registry`.
- `NodeCollector` – `collect()` runs its collectors in parallel threads and
  returns their samples, plus `node_scrape_collector_duration_seconds` and
  `node_scrape_collector_success` for each one; `describe()` returns the
  descriptions of those two. A collector that raises is logged and marked
  unsuccessful rather than stopping the others.
- `NoDataError` – raised by a collector that found nothing to report, such as
  when a kernel module is not loaded. The scrape is marked unsuccessful and
  logged at debug level only.
- `read_uint_from_file(path)` – reads a file holding one unsigned 64-bit
  integer.

## Example

```python
import nodemetrics.cpu        # importing a module registers its collector
import nodemetrics.diskstats
from nodemetrics.collector import Settings, default_registry
from nodemetrics.metrics import format_metrics

node = default_registry.create(Settings(), ["cpu", "diskstats"])
print(format_metrics(node.collect()))
```

## What it does not do

`nodemetrics` is a library. It has no command-line program and no HTTP
server: it does not listen on a port or serve a `/metrics` endpoint. Serving
the output of `format_metrics` is left to the application that uses it.

## Tests

The test suite uses pytest and is installed with the `test` extra.