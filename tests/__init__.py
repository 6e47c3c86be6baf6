"""
Test configuration and setup for the gppaudit test suite.

Provides a base test case that builds a throwaway policy tree in a
temporary directory, plus builders for the preference XML files the
scanner looks for.
"""

import shutil
import tempfile
import unittest
from pathlib import Path
from typing import Dict, Iterable, Optional


SAMPLE_GUID = "{11111111-1111-1111-1111-111111111111}"
SAMPLE_CPASSWORD = "AAAAsPumpkin=="


class TestDataGenerator:
    """Builds GPP XML documents for the five preference files."""

    @staticmethod
    def _attrs(attrs: Dict[str, str]) -> str:
        return " ".join(f'{k}="{v}"' for k, v in attrs.items())

    @classmethod
    def groups_xml(cls, users: Iterable[Dict[str, str]]) -> str:
        body = []
        for props in users:
            props = dict(props)
            name = props.pop("name", props.get("userName", ""))
            body.append(
                f'  <User clsid="{{DF5F1855-51E5-4d24-8B1A-D9BDE98BA1D1}}" name="{name}" image="2">\n'
                f'    <Properties action="U" {cls._attrs(props)}/>\n'
                f'  </User>'
            )
        return (
            '<?xml version="1.0" encoding="utf-8"?>\n'
            '<Groups clsid="{3125E937-EB16-4b4c-9934-544FC6D24D26}">\n'
            + "\n".join(body)
            + "\n</Groups>\n"
        )

    @classmethod
    def preference_xml(cls, root_tag: str, node_tag: str, nodes: Iterable[Dict[str, str]]) -> str:
        body = []
        for props in nodes:
            props = dict(props)
            name = props.pop("name", "")
            body.append(
                f'  <{node_tag} name="{name}">\n'
                f'    <Properties {cls._attrs(props)}/>\n'
                f'  </{node_tag}>'
            )
        return (
            '<?xml version="1.0" encoding="utf-8"?>\n'
            f'<{root_tag}>\n' + "\n".join(body) + f"\n</{root_tag}>\n"
        )

    @staticmethod
    def gpt_ini(display_name: Optional[str]) -> str:
        lines = ["[General]", "Version=65537"]
        if display_name is not None:
            lines.append(f"displayName={display_name}")
        return "\r\n".join(lines) + "\r\n"


class GPPTestCase(unittest.TestCase):
    """Base test case managing a temporary SYSVOL-like tree."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp(prefix="gppaudit_test_"))
        self.data_generator = TestDataGenerator()

    def tearDown(self):
        if self.temp_dir.exists():
            shutil.rmtree(self.temp_dir, ignore_errors=True)

    def policy_dir(self, guid: str = SAMPLE_GUID) -> Path:
        path = self.temp_dir / "corp.local" / "Policies" / guid
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write_file(self, relative: str, content: str, base: Optional[Path] = None) -> Path:
        file_path = (base or self.temp_dir) / relative
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return file_path

    def write_preference(self, scope: str, folder: str, filename: str, content: str,
                         guid: str = SAMPLE_GUID) -> Path:
        return self.write_file(
            f"{scope}/Preferences/{folder}/{filename}",
            content,
            base=self.policy_dir(guid),
        )
