from __future__ import annotations

import json
from pathlib import Path

import pytest

NS = "http://soap.sforce.com/2006/04/metadata"


class SourceProject:
    """Tiny Salesforce source-format project on disk."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.default = root / "force-app" / "main" / "default"
        self.default.mkdir(parents=True)
        (root / "sfdx-project.json").write_text(
            json.dumps({"packageDirectories": [{"path": "force-app", "default": True}]}),
            encoding="utf-8",
        )

    def _write(self, rel: str, text: str) -> Path:
        p = self.default / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p

    def add_class(self, name: str, body: str = "") -> None:
        self._write(f"classes/{name}.cls", body or f"public class {name} {{}}\n")
        self._write(
            f"classes/{name}.cls-meta.xml",
            f'<ApexClass xmlns="{NS}"><apiVersion>61.0</apiVersion><status>Active</status></ApexClass>',
        )

    def add_object(self, name: str) -> None:
        self._write(f"objects/{name}/{name}.object-meta.xml", f'<CustomObject xmlns="{NS}"/>')

    def add_field(self, obj: str, name: str, label: str = "") -> None:
        self._write(
            f"objects/{obj}/fields/{name}.field-meta.xml",
            f'<CustomField xmlns="{NS}"><fullName>{name}</fullName><label>{label or name}</label></CustomField>',
        )

    def add_validation_rule(self, obj: str, name: str, formula: str = "false") -> None:
        self._write(
            f"objects/{obj}/validationRules/{name}.validationRule-meta.xml",
            f'<ValidationRule xmlns="{NS}"><fullName>{name}</fullName>'
            f"<errorConditionFormula>{formula}</errorConditionFormula></ValidationRule>",
        )

    def add_lwc(self, name: str, html: str = "<template></template>") -> None:
        self._write(f"lwc/{name}/{name}.html", html)
        self._write(f"lwc/{name}/{name}.js", "export default class extends LightningElement {}\n")
        self._write(
            f"lwc/{name}/{name}.js-meta.xml",
            f'<LightningComponentBundle xmlns="{NS}"><isExposed>false</isExposed></LightningComponentBundle>',
        )

    def write(self, rel: str, text: str) -> Path:
        return self._write(rel, text)

    def remove(self, rel: str) -> None:
        (self.default / rel).unlink()


@pytest.fixture
def project(tmp_path) -> SourceProject:
    return SourceProject(tmp_path / "proj")
