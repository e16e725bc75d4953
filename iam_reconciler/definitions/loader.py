"""
Definition Loader for the IAM Reconciler.

Reads the account/role folder tree into AccountDefinition and
RoleDefinition objects:

    <root>/global.json                     shared template fragment (optional)
    <root>/parameters.json                 global parameters (optional)
    <root>/<account>/account.yaml          account_id, region, enacting_role
    <root>/<account>/<role>/template.json  stack template for the role
    <root>/<account>/<role>/policy.json    managed policy document

Role templates are merged over the global fragment and ${Name}
placeholders are filled from the parameters.
"""

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import DefinitionError
from ..models import AccountDefinition, PolicyDefinition, RoleDefinition, policy_arn

logger = logging.getLogger(__name__)

ACCOUNT_FILES = ("account.yaml", "account.yml", "account.json")
TEMPLATE_FILE = "template.json"
POLICY_FILE = "policy.json"
GLOBAL_TEMPLATE_FILE = "global.json"
PARAMETERS_FILE = "parameters.json"

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z0-9_]+)\}")


class AccountTree(BaseModel):
    """An account with the roles defined under it."""
    account: AccountDefinition
    roles: List[RoleDefinition] = Field(default_factory=list)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge two mappings recursively; values from override win."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def substitute(value: Any, parameters: Dict[str, Any]) -> Any:
    """
    Replace ${Name} placeholders in every string of a JSON structure.

    Unknown names are left alone, so CloudFormation Fn::Sub variables pass through.
    """
    if isinstance(value, str):
        return _PLACEHOLDER.sub(
            lambda m: str(parameters[m.group(1)]) if m.group(1) in parameters else m.group(0),
            value,
        )
    if isinstance(value, list):
        return [substitute(item, parameters) for item in value]
    if isinstance(value, dict):
        return {key: substitute(item, parameters) for key, item in value.items()}
    return value


def _read_json(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except ValueError as e:
        raise DefinitionError(f"{path} is not valid JSON: {e}") from e


def _declared_role_names(template: Dict[str, Any]) -> List[Optional[str]]:
    """RoleName of every AWS::IAM::Role resource; None where the name is left to the stack."""
    names = []
    for resource in (template.get("Resources") or {}).values():
        if isinstance(resource, dict) and resource.get("Type") == "AWS::IAM::Role":
            names.append((resource.get("Properties") or {}).get("RoleName"))
    return names


class DefinitionLoader:
    """Loads and checks the account/role definition tree."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        if not self.root.is_dir():
            raise DefinitionError(f"Definition root {self.root} is not a directory")

        global_file = self.root / GLOBAL_TEMPLATE_FILE
        self.global_template: Dict[str, Any] = _read_json(global_file) if global_file.exists() else {}

        parameters_file = self.root / PARAMETERS_FILE
        self.parameters: Dict[str, Any] = _read_json(parameters_file) if parameters_file.exists() else {}

    def load(self, accounts: Optional[List[str]] = None) -> List[AccountTree]:
        """
        Load every account folder, or only the named ones.

        Raises:
            DefinitionError: on missing files, bad JSON/YAML or naming violations
        """
        trees = []
        for folder in sorted(p for p in self.root.iterdir() if p.is_dir()):
            if folder.name.startswith("."):
                continue
            if accounts and folder.name not in accounts:
                continue
            trees.append(self.load_account(folder))

        if accounts:
            missing = set(accounts) - {tree.account.name for tree in trees}
            if missing:
                raise DefinitionError(f"Unknown accounts: {', '.join(sorted(missing))}")

        logger.info(f"Loaded {len(trees)} accounts from {self.root}")
        return trees

    def load_account(self, folder: Path) -> AccountTree:
        account = self._load_account_file(folder)
        roles = [
            self.load_role(account, role_folder)
            for role_folder in sorted(p for p in folder.iterdir() if p.is_dir())
            if not role_folder.name.startswith(".")
        ]
        logger.debug(f"Account {account.name}: {len(roles)} roles")
        return AccountTree(account=account, roles=roles)

    def _load_account_file(self, folder: Path) -> AccountDefinition:
        for filename in ACCOUNT_FILES:
            path = folder / filename
            if path.exists():
                break
        else:
            raise DefinitionError(f"No account file in {folder} (expected one of {', '.join(ACCOUNT_FILES)})")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise DefinitionError(f"{path} is not valid YAML: {e}") from e

        if not isinstance(data, dict):
            raise DefinitionError(f"{path} must hold a mapping, not {type(data).__name__}")
        data.setdefault("name", folder.name)
        if data["name"] != folder.name:
            raise DefinitionError(f"Account name {data['name']!r} in {path} must match folder {folder.name!r}")
        try:
            return AccountDefinition(**data)
        except PydanticValidationError as e:
            raise DefinitionError(f"Invalid account definition {path}: {e}") from e

    def load_role(self, account: AccountDefinition, folder: Path) -> RoleDefinition:
        role_name = folder.name
        template_path = folder / TEMPLATE_FILE
        policy_path = folder / POLICY_FILE
        for path in (template_path, policy_path):
            if not path.exists():
                raise DefinitionError(f"Missing {path.name} for role {role_name} in {account.name}")

        parameters = dict(self.parameters)
        parameters.update({
            "RoleName": role_name,
            "AccountId": account.account_id,
            "AccountName": account.name,
            "Region": account.region,
            "PolicyArn": policy_arn(account.account_id, role_name),
        })

        template = substitute(deep_merge(self.global_template, _read_json(template_path)), parameters)
        document = substitute(_read_json(policy_path), parameters)

        # The stack, the role and the policy share the folder name.
        declared = _declared_role_names(template)
        if declared != [role_name]:
            shown = ", ".join(repr(name) if name else "unnamed role" for name in declared) or "no role"
            raise DefinitionError(
                f"Template for {role_name} in {account.name} must declare exactly one "
                f"AWS::IAM::Role with RoleName {role_name!r}, found {shown}"
            )

        try:
            return RoleDefinition(
                role_name=role_name,
                stack_name=role_name,
                template_body=json.dumps(template, indent=2, sort_keys=True),
                policy=PolicyDefinition(
                    policy_name=role_name,
                    document_body=json.dumps(document, sort_keys=True),
                    account_id=account.account_id,
                ),
            )
        except PydanticValidationError as e:
            raise DefinitionError(f"Invalid role definition {folder}: {e}") from e


def load_tree(root: Union[str, Path], accounts: Optional[List[str]] = None) -> List[AccountTree]:
    """Load the definition tree under root."""
    return DefinitionLoader(root).load(accounts)
