"""Permission rule templating for namespace broker users."""
from __future__ import annotations

import re
from dataclasses import dataclass

NAMESPACE_PLACEHOLDER = "{{namespace}}"

_NAMESPACE_NAME = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_namespace_name(name: str, prefix: str | None = None) -> str:
    """Return ``name`` unchanged if it is a legal namespace name."""

    value = name.strip()
    if not _NAMESPACE_NAME.fullmatch(value):
        raise ValueError(
            "Namespace names may only contain letters, numbers, underscores, or hyphens "
            "and must be 64 characters or fewer"
        )
    if prefix and not value.startswith(prefix):
        raise ValueError(f"Namespace names must begin with {prefix!r}")
    return value


@dataclass(frozen=True)
class PermissionRule:
    """The configure/write/read regex triple granted to one broker user."""

    configure: str
    write: str
    read: str

    def grants(self, kind: str, resource: str) -> bool:
        """Return ``True`` if ``resource`` matches the pattern for ``kind``."""

        pattern = getattr(self, kind)
        return re.match(pattern, resource) is not None

    def to_payload(self) -> dict[str, str]:
        return {"configure": self.configure, "write": self.write, "read": self.read}


@dataclass(frozen=True)
class PermissionTemplate:
    """A single regex template with ``{{namespace}}`` placeholders."""

    pattern: str

    def render(self, namespace: str) -> str:
        return self.pattern.replace(NAMESPACE_PLACEHOLDER, re.escape(namespace))

    def check(self, *, isolating: bool) -> None:
        """Raise ``ValueError`` when the template cannot be used safely.

        Isolating templates (configure and write) must be anchored and may only
        use the namespace as a complete path segment, otherwise the rule for
        ``tc-foo`` would also match resources of ``tc-foobar``.
        """

        if isolating:
            if NAMESPACE_PLACEHOLDER not in self.pattern:
                raise ValueError(f"Template {self.pattern!r} does not reference {NAMESPACE_PLACEHOLDER}")
            if not self.pattern.startswith("^"):
                raise ValueError(f"Template {self.pattern!r} must be anchored with '^'")
            for segment in self.pattern.split(NAMESPACE_PLACEHOLDER)[1:]:
                if not segment.startswith("/"):
                    raise ValueError(
                        f"Template {self.pattern!r} must follow {NAMESPACE_PLACEHOLDER} with '/'"
                    )
        try:
            re.compile(self.render("namespace-check"))
        except re.error as exc:
            raise ValueError(f"Template {self.pattern!r} is not a valid regular expression: {exc}") from exc


@dataclass(frozen=True)
class PermissionTemplates:
    """The configured configure/write/read templates."""

    configure: PermissionTemplate
    write: PermissionTemplate
    read: PermissionTemplate

    @staticmethod
    def from_strings(configure: str, write: str, read: str) -> "PermissionTemplates":
        templates = PermissionTemplates(
            configure=PermissionTemplate(configure),
            write=PermissionTemplate(write),
            read=PermissionTemplate(read),
        )
        templates.configure.check(isolating=True)
        templates.write.check(isolating=True)
        templates.read.check(isolating=False)
        return templates

    def render(self, namespace: str) -> PermissionRule:
        return PermissionRule(
            configure=self.configure.render(namespace),
            write=self.write.render(namespace),
            read=self.read.render(namespace),
        )


DEFAULT_CONFIGURE_TEMPLATE = "^(queue/{{namespace}}/.*|exchange/{{namespace}}/.*)"
DEFAULT_WRITE_TEMPLATE = "^(queue/{{namespace}}/.*|exchange/{{namespace}}/.*)"
DEFAULT_READ_TEMPLATE = "^(queue/{{namespace}}/.*|exchange/.*)"


__all__ = [
    "DEFAULT_CONFIGURE_TEMPLATE",
    "DEFAULT_READ_TEMPLATE",
    "DEFAULT_WRITE_TEMPLATE",
    "NAMESPACE_PLACEHOLDER",
    "PermissionRule",
    "PermissionTemplate",
    "PermissionTemplates",
    "validate_namespace_name",
]
