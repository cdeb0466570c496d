# lvh

A helper for building and running virtual machines used to test kernels.

With it you can:

- build disk images from a JSON description. Each image can derive from another
  image, and packages and customisation actions can be added to it;
- keep a directory of kernel sources, fetched from git, and configure and build them;
- start QEMU with one of the images and, if you want, a kernel.

## Installation

```
pip install .
```

The package has no Python dependencies, but it runs external tools, which must
be installed for the commands that use them:

- building images: `mmdebstrap`, `qemu-img`, `virt-customize`, `guestfish`;
- fetching, configuring and building kernels: `git`, `make` (and a cross
  compiler such as `aarch64-linux-gnu-gcc` when building for another architecture);
- running VMs: `qemu-system-x86_64` or `qemu-system-aarch64`.

## Usage

### Images

Print an example image configuration, then build the images it describes:

```
lvh images example-config > mydir/images.json
lvh images build --dir mydir
```

`mydir/images.json` holds a JSON list of image configurations. The images are
written to `mydir/images`. An image whose parent is also configured is built
from a copy of that parent. An image that already exists is reused, unless its
parent was rebuilt.

Options of `lvh images build`:

- `--dry-run` creates empty files in place of real images;
- `--force-rebuild` rebuilds images that already exist;
- `-i <name>` / `--image <name>` (repeatable) builds only the named images
  and, after them, their children;
- `--no-merge-steps` runs every customisation step as a separate
  `virt-customize` call.

Image actions have the types `run-command`, `copy-in`, `set-hostname`, `mkdir`,
`upload`, `chmod`, `append-line`, `link` and `install-kernel`.

### Kernels

```
lvh kernels init --dir kdir
lvh kernels add bpf-next git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git --dir kdir --fetch
lvh kernels list --dir kdir
lvh kernels fetch bpf-next --dir kdir
lvh kernels configure bpf-next --dir kdir
lvh kernels build bpf-next --dir kdir
lvh kernels remove bpf-next --dir kdir
```

`lvh kernels raw_configure <kernel_dir> [<kernel_name>] --dir kdir` configures a
source tree that was prepared some other way.

Kernel URLs use the `git://` or `https://` scheme. Add `#branch` to choose the
branch (the default is `master`). Add `?depth=N` to clone the kernel shallow
into a directory of its own. Without a depth, kernels share one bare repository
and each one gets a git worktree.

`init` and `add` take `--config-groups` with a comma-separated list of
predefined groups of config options: `basic`, `minimize`, `bpf`, `virtio`,
`namespaces`. By default, `init` uses all of them. `configure`, `raw_configure`
and `build` take `--arch amd64` or `--arch arm64`. The default is the host
architecture.

`kernels` may also be written `kernel` or `k`.

### Running a VM

```
lvh run --image mydir/images/base.img --kernel path/to/bzImage -p 2222:22
```

`-p hostport[:vmport[:tcp|udp]]` forwards a port and can be repeated.
`--qemu-cmd-print` prints the QEMU command without running it. `-v` prints it
and then runs it.

Other options:

- `--cpu` and `--mem` set the CPU count and the memory size;
- `--cpu-kind` sets the CPU kind;
- `--root-dev hda|vda` sets the root device;
- `--serial-port` and `--qemu-monitor-port` open telnet and TCP endpoints;
- `--console-log-file` writes the console output to a file;
- `--host-mount` mounts a host directory in the VM;
- `--daemonize` runs QEMU in the background;
- `--no-hw-accel` turns off hardware acceleration;
- `--qemu-arch` chooses the emulated architecture.

When QEMU starts, it replaces the `lvh` process.

### Version

```
lvh version
```

## Library use

The command line is built on the package's modules, and you can use them directly:

- `lvh.arch`: architectures;
- `lvh.runner`: `RunConf`, `build_qemu_args`, `parse_port_forward`, `start_qemu`;
- `lvh.logcmd`: `run_and_log_command`, `run_and_log_commands`;
- `lvh.step`: `Step`, `do_steps`;
- `lvh.kernels.manage`, `lvh.kernels.conf`, `lvh.kernels.url`, `lvh.kernels.kdir`;
- `lvh.images.config`, `lvh.images.actions`, `lvh.images.forest`,
  `lvh.images.build`.

## What it does not do

- `lvh run` needs a local image file. Images are not pulled from container
  registries, and there is no `images pull` command.
- Prebuilt kernels cannot be listed or downloaded from a registry. There are no
  `kernels catalog` or `kernels pull` commands. Kernels are only built from source.
- Kernel URLs with the `http://` scheme are rejected.