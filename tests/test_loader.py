"""
Tests for the definition tree loader.
"""

import json

import pytest

from iam_reconciler.definitions import DefinitionLoader, deep_merge, load_tree, substitute
from iam_reconciler.exceptions import DefinitionError
from iam_reconciler.workflows import validate_account_tree

from tests.conftest import write_tree

MASTER = {"account_id": "111111111111", "region": "eu-west-1", "enacting_role": "deployer"}


def template(role_name="${RoleName}", **properties):
    props = {"RoleName": role_name, "AssumeRolePolicyDocument": {"Statement": []}}
    props.update(properties)
    return {"Resources": {"Role": {"Type": "AWS::IAM::Role", "Properties": props}}}


POLICY = {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": "s3:*", "Resource": "*"}]}


class TestDefinitionLoader:
    """Test cases for DefinitionLoader."""

    def test_loads_accounts_and_roles(self, tmp_path):
        root = write_tree(tmp_path / "defs", {
            "master": (MASTER, {"external-admin": (template(), POLICY), "auditor": (template(), POLICY)}),
            "dev": ({"account_id": "222222222222", "enacting_role": "deployer"}, {}),
        })

        trees = load_tree(root)

        assert [t.account.name for t in trees] == ["dev", "master"]
        master = trees[1]
        assert master.account.region == "eu-west-1"
        assert master.account.enacting_role_arn == "arn:aws:iam::111111111111:role/deployer"
        assert [r.role_name for r in master.roles] == ["auditor", "external-admin"]
        role = master.roles[1]
        assert role.stack_name == role.policy_name == "external-admin"
        assert role.policy.account_id == "111111111111"
        body = json.loads(role.template_body)
        assert body["Resources"]["Role"]["Properties"]["RoleName"] == "external-admin"
        assert json.loads(role.policy.document_body) == POLICY
        assert validate_account_tree(master) == []

    def test_global_template_and_parameters(self, tmp_path):
        global_template = {
            "AWSTemplateFormatVersion": "2010-09-09",
            "Resources": {"Role": {"Properties": {
                "Tags": [{"Key": "Owner", "Value": "${Team}"}],
                "Path": "/managed/",
            }}},
        }
        role_tpl = template(Description="${AccountName} role in ${Region} via ${PolicyArn}",
                            Path="/custom/")
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {"ops": (role_tpl, POLICY)})},
                          global_template=global_template, parameters={"Team": "platform"})

        role = DefinitionLoader(root).load()[0].roles[0]
        body = json.loads(role.template_body)

        assert body["AWSTemplateFormatVersion"] == "2010-09-09"
        properties = body["Resources"]["Role"]["Properties"]
        assert properties["Tags"] == [{"Key": "Owner", "Value": "platform"}]
        assert properties["Path"] == "/custom/"
        assert properties["Description"] == (
            "master role in eu-west-1 via arn:aws:iam::111111111111:policy/ops"
        )

    def test_account_filter(self, tmp_path):
        root = write_tree(tmp_path / "defs", {
            "master": (MASTER, {}),
            "dev": ({"account_id": "222222222222", "enacting_role": "deployer"}, {}),
        })

        assert [t.account.name for t in load_tree(root, ["master"])] == ["master"]
        with pytest.raises(DefinitionError, match="Unknown accounts: prod"):
            load_tree(root, ["master", "prod"])

    def test_missing_policy_file(self, tmp_path):
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {"ops": (template(), None)})})

        with pytest.raises(DefinitionError, match="Missing policy.json"):
            load_tree(root)

    def test_role_name_must_match_folder(self, tmp_path):
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {"ops": (template("admin"), POLICY)})})

        with pytest.raises(DefinitionError, match="admin"):
            load_tree(root)

    def test_role_without_name_is_rejected(self, tmp_path):
        unnamed = {"Resources": {"Role": {"Type": "AWS::IAM::Role", "Properties": {
            "AssumeRolePolicyDocument": {"Statement": []},
        }}}}
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {"external-admin": (unnamed, POLICY)})})

        with pytest.raises(DefinitionError, match="unnamed role"):
            load_tree(root)

    def test_template_without_role_is_rejected(self, tmp_path):
        bucket_only = {"Resources": {"Bucket": {"Type": "AWS::S3::Bucket"}}}
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {"external-admin": (bucket_only, POLICY)})})

        with pytest.raises(DefinitionError, match="no role"):
            load_tree(root)

    def test_second_role_is_rejected(self, tmp_path):
        two_roles = template()
        two_roles["Resources"]["Other"] = template()["Resources"]["Role"]
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {"ops": (two_roles, POLICY)})})

        with pytest.raises(DefinitionError, match="exactly one"):
            load_tree(root)

    @pytest.mark.parametrize("content", ["- 111111111111\n- deployer\n", "just-a-string\n"])
    def test_account_file_must_be_a_mapping(self, tmp_path, content):
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {})})
        (root / "master" / "account.yaml").write_text(content)

        with pytest.raises(DefinitionError, match="must hold a mapping"):
            load_tree(root)

    def test_invalid_account_id(self, tmp_path):
        root = write_tree(tmp_path / "defs", {"master": ({"account_id": "123", "enacting_role": "d"}, {})})

        with pytest.raises(DefinitionError, match="Invalid account definition"):
            load_tree(root)

    def test_bad_json(self, tmp_path):
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {"ops": (template(), POLICY)})})
        (root / "master" / "ops" / "policy.json").write_text("{not json")

        with pytest.raises(DefinitionError, match="not valid JSON"):
            load_tree(root)

    def test_root_must_exist(self, tmp_path):
        with pytest.raises(DefinitionError):
            DefinitionLoader(tmp_path / "missing")

    def test_hidden_folders_are_skipped(self, tmp_path):
        root = write_tree(tmp_path / "defs", {"master": (MASTER, {})})
        (root / ".git").mkdir()

        assert [t.account.name for t in load_tree(root)] == ["master"]


class TestTemplateHelpers:
    """Test cases for merge and substitution helpers."""

    def test_deep_merge_does_not_mutate(self):
        base = {"a": {"b": 1, "c": 2}, "list": [1]}
        merged = deep_merge(base, {"a": {"c": 3}, "list": [2]})

        assert merged == {"a": {"b": 1, "c": 3}, "list": [2]}
        assert base == {"a": {"b": 1, "c": 2}, "list": [1]}

    def test_unknown_placeholders_pass_through(self):
        value = {"Fn::Sub": "arn:aws:s3:::${AWS::AccountId}-${Bucket}-${Env}"}

        assert substitute(value, {"Env": "prod"}) == {
            "Fn::Sub": "arn:aws:s3:::${AWS::AccountId}-${Bucket}-prod"
        }

    def test_non_strings_untouched(self):
        assert substitute([1, True, None, "${X}"], {"X": 5}) == [1, True, None, "5"]
