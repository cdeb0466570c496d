"""Example kernel URLs, used in help text."""

from __future__ import annotations

from dataclasses import dataclass

from lvh.kernels.url import GitURL, KernelURL


@dataclass(frozen=True)
class UrlExample:
    """A named kernel URL and the source location it describes."""

    name: str
    url: str
    expected_kernel_url: KernelURL


URL_EXAMPLES: tuple[UrlExample, ...] = (
    UrlExample(
        name="bpf-next",
        url="git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git",
        expected_kernel_url=GitURL(
            repo="git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git",
            branch="master",
            shallow_depth=-1,
        ),
    ),
    UrlExample(
        name="5.18",
        url="git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git#linux-5.18.y",
        expected_kernel_url=GitURL(
            repo="git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git",
            branch="linux-5.18.y",
            shallow_depth=-1,
        ),
    ),
    UrlExample(
        name="5.15",
        url="git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git?depth=1#linux-5.15.y",
        expected_kernel_url=GitURL(
            repo="git://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git",
            branch="linux-5.15.y",
            shallow_depth=1,
        ),
    ),
)


def get_examples_text() -> str:
    """Help text showing how to add the example kernels."""
    lines = "".join(f"  add {ex.name} {ex.url}\n" for ex in URL_EXAMPLES)
    return (
        lines
        + "\n"
        + "The bpf-next and 5.18 kernels will use a common bare repository and git worktrees.\n"
        + "The 5.15 kernel will be cloned in a shallow dir on its own."
    )