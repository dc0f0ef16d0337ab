"""
Tests for YAML playbook and role loading.
"""

from pathlib import Path

import pytest

from choreo.engine.errors import ParseError, UnsupportedFeatureError, ValidationError
from choreo.engine.executor import PlaybookExecutor
from choreo.engine.loader import PlaybookLoader, RoleLoader, TaskParser, parse_role_dependency
from choreo.engine.playbook import Condition
from choreo.engine.results import TaskResult
from choreo.engine.roles import RoleManager


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def load_playbook(tmp_path: Path, content: str):
    return PlaybookLoader(write(tmp_path / "site.yml", content)).load()


class TestTaskParsing:
    """Test module detection and task keywords."""

    def test_module_and_keywords(self, tmp_path):
        playbook = load_playbook(tmp_path, """
- name: Web
  hosts: web
  tasks:
    - name: Install packages
      apt:
        name: "{{ item }}"
      loop: [nginx, curl]
      when: ansible_os_family == "Debian"
      tags: packages
      notify: restart nginx
      retries: 2
      delay: 1
""")
        task = playbook.plays[0].tasks[0]
        assert task.module == "apt"
        assert task.args == {"name": "{{ item }}"}
        assert task.loop == ["nginx", "curl"]
        assert task.when == Condition(expression='ansible_os_family == "Debian"')
        assert task.tags == ["packages"]
        assert task.notify == ["restart nginx"]
        assert task.retries == 2
        assert task.delay == 1.0

    def test_inline_args(self, tmp_path):
        parser = TaskParser(tmp_path, tmp_path / "x.yml")
        task = parser.parse_task({"copy": "src=a.txt dest='/tmp/b c.txt'"})
        assert task.args == {"src": "a.txt", "dest": "/tmp/b c.txt"}
        assert task.name == "copy task"

    def test_free_form_args(self, tmp_path):
        parser = TaskParser(tmp_path, tmp_path / "x.yml")
        task = parser.parse_task({"name": "ls", "shell": "ls -la /tmp"})
        assert task.args == {"_raw_params": "ls -la /tmp"}

    def test_with_items_alias(self, tmp_path):
        parser = TaskParser(tmp_path, tmp_path / "x.yml")
        task = parser.parse_task({"debug": {"msg": "x"}, "with_items": "{{ pkgs }}"})
        assert task.loop == "{{ pkgs }}"

    def test_missing_module(self, tmp_path):
        parser = TaskParser(tmp_path, tmp_path / "x.yml")
        with pytest.raises(ParseError, match="no module"):
            parser.parse_task({"name": "nothing", "when": True})

    @pytest.mark.parametrize("key", ["async", "loop_control", "include_role", "local_action"])
    def test_unsupported_keys(self, tmp_path, key):
        parser = TaskParser(tmp_path, tmp_path / "x.yml")
        with pytest.raises(UnsupportedFeatureError):
            parser.parse_task({"name": "t", "debug": {}, key: "x"})


class TestBlocksAndIncludes:
    """Test static expansion of blocks and included task files."""

    def test_block_pushes_down_when_and_tags(self, tmp_path):
        parser = TaskParser(tmp_path, tmp_path / "x.yml")
        tasks = parser.parse_list([{
            "block": [
                {"name": "a", "debug": {}},
                {"name": "b", "debug": {}, "when": "y", "tags": ["own"]},
            ],
            "when": "x",
            "tags": "grouped",
        }])
        assert [t.name for t in tasks] == ["a", "b"]
        assert tasks[0].when == Condition(expression="x")
        assert tasks[1].when == Condition(expression="(x) and (y)")
        assert tasks[0].tags == ["grouped"]
        assert tasks[1].tags == ["own", "grouped"]

    def test_block_rescue_rejected(self, tmp_path):
        parser = TaskParser(tmp_path, tmp_path / "x.yml")
        with pytest.raises(UnsupportedFeatureError):
            parser.parse_list([{"block": [{"debug": {}}], "rescue": [{"debug": {}}]}])

    def test_include_tasks(self, tmp_path):
        write(tmp_path / "common.yml", """
- name: from include
  debug:
    msg: hi
""")
        playbook = load_playbook(tmp_path, """
- hosts: all
  name: Included
  tasks:
    - include_tasks: common.yml
      when: enabled
""")
        task = playbook.plays[0].tasks[0]
        assert task.name == "from include"
        assert task.when == Condition(expression="enabled")

    def test_include_missing_file(self, tmp_path):
        with pytest.raises(ParseError, match="not found"):
            load_playbook(tmp_path, """
- hosts: all
  tasks:
    - import_tasks: nope.yml
""")


class TestPlayParsing:
    """Test play-level keys and validation."""

    def test_play_fields(self, tmp_path):
        write(tmp_path / "vars" / "extra.yml", "region: eu\n")
        playbook = load_playbook(tmp_path, """
- name: Full
  hosts: web, db
  serial: 2
  gather_facts: false
  tags: [deploy]
  vars:
    app: shop
  vars_files:
    - vars/extra.yml
  pre_tasks:
    - debug: {msg: pre}
  post_tasks:
    - debug: {msg: post}
  handlers:
    - name: restart
      service: {name: app, state: restarted}
""")
        play = playbook.plays[0]
        assert play.host_patterns() == ["web", "db"]
        assert play.serial == 2
        assert play.gather_facts is False
        assert play.tags == ["deploy"]
        assert play.vars == {"app": "shop", "region": "eu"}
        assert len(play.pre_tasks) == 1 and len(play.post_tasks) == 1
        assert play.handlers[0].name == "restart"

    def test_gather_facts_unset(self, tmp_path):
        playbook = load_playbook(tmp_path, "- hosts: all\n  tasks: []\n")
        assert playbook.plays[0].gather_facts is None
        assert playbook.plays[0].name == "Unnamed play"

    def test_multiple_documents(self, tmp_path):
        playbook = load_playbook(tmp_path, """
- name: one
  hosts: a
---
- name: two
  hosts: b
""")
        assert [p.name for p in playbook.plays] == ["one", "two"]

    def test_missing_hosts(self, tmp_path):
        with pytest.raises(ParseError, match="hosts"):
            load_playbook(tmp_path, "- name: no hosts\n  tasks: []\n")

    def test_unknown_play_key(self, tmp_path):
        with pytest.raises(UnsupportedFeatureError, match="max_fail_percentage"):
            load_playbook(tmp_path, "- hosts: all\n  max_fail_percentage: 10\n")

    def test_import_playbook_rejected(self, tmp_path):
        with pytest.raises(UnsupportedFeatureError):
            load_playbook(tmp_path, "- import_playbook: other.yml\n")

    def test_empty_playbook_invalid(self, tmp_path):
        with pytest.raises(ValidationError):
            load_playbook(tmp_path, "")

    def test_yaml_error(self, tmp_path):
        with pytest.raises(ParseError, match="YAML"):
            load_playbook(tmp_path, "- hosts: [unclosed\n")

    def test_missing_playbook(self, tmp_path):
        with pytest.raises(ParseError, match="not found"):
            PlaybookLoader(tmp_path / "missing.yml").load()

    def test_role_references(self, tmp_path):
        playbook = load_playbook(tmp_path, """
- hosts: all
  roles:
    - common
    - role: web
      port: 8080
      tags: [web]
      when: deploy_web
""")
        refs = playbook.plays[0].roles
        assert refs[0].name == "common"
        assert refs[1].name == "web"
        assert refs[1].vars == {"port": 8080}
        assert refs[1].tags == ["web"]
        assert refs[1].when == Condition(expression="deploy_web")


class TestRoleLoading:
    """Test role directory loading."""

    @pytest.fixture
    def roles_dir(self, tmp_path) -> Path:
        roles = tmp_path / "roles"
        write(roles / "web" / "tasks" / "main.yml", """
- name: install nginx
  apt: name=nginx
""")
        write(roles / "web" / "handlers" / "main.yaml", """
- name: restart nginx
  service: name=nginx state=restarted
""")
        write(roles / "web" / "defaults" / "main.yml", "port: 80\n")
        write(roles / "web" / "vars" / "main.yml", "user: www\n")
        write(roles / "web" / "meta" / "main.yml", """
dependencies:
  - common
  - role: firewall
    allow_port: 80
    tags: [fw]
""")
        write(roles / "common" / "tasks" / "main.yml", "- ping:\n")
        return roles

    def test_load_role(self, roles_dir):
        role = RoleLoader([roles_dir]).load("web")
        assert [t.name for t in role.tasks] == ["install nginx"]
        assert role.tasks[0].args == {"name": "nginx"}
        assert [h.name for h in role.handlers] == ["restart nginx"]
        assert role.defaults == {"port": 80}
        assert role.vars == {"user": "www"}
        assert role.dependency_names() == ["common", "firewall"]
        firewall = role.dependencies[1]
        assert firewall.vars == {"allow_port": 80}
        assert firewall.tags == ["fw"]

    def test_role_without_optional_dirs(self, roles_dir):
        role = RoleLoader([roles_dir]).load("common")
        assert role.handlers == []
        assert role.defaults == {}
        assert role.dependencies == []

    def test_exists_and_missing(self, roles_dir):
        loader = RoleLoader([roles_dir])
        assert loader.exists("web")
        assert not loader.exists("db")
        with pytest.raises(ParseError, match="Role not found"):
            loader.load("db")

    def test_search_order(self, tmp_path, roles_dir):
        other = tmp_path / "more_roles"
        write(other / "web" / "tasks" / "main.yml", "- name: shadowed\n  ping:\n")
        role = RoleLoader([other, roles_dir]).load("web")
        assert role.tasks[0].name == "shadowed"

    def test_playbook_loader_finds_adjacent_roles(self, tmp_path, roles_dir):
        loader = PlaybookLoader(tmp_path / "site.yml")
        assert loader.role_loader.exists("web")


class TestRoleDependencyParsing:
    """Test meta dependency entries."""

    def test_string(self):
        dep = parse_role_dependency("common")
        assert dep.role == "common"
        assert dep.vars == {}

    def test_mapping_with_vars(self):
        dep = parse_role_dependency({
            "role": "db", "version": "1.2", "vars": {"engine": "pg"}, "replicas": 2,
        })
        assert dep.role == "db"
        assert dep.version == "1.2"
        assert dep.vars == {"replicas": 2, "engine": "pg"}

    def test_missing_name(self):
        with pytest.raises(ParseError):
            parse_role_dependency({"vars": {}})

    def test_bad_type(self):
        with pytest.raises(ParseError):
            parse_role_dependency(42)


class TestLoadAndRun:
    """Test executing a playbook loaded from disk."""

    @pytest.mark.asyncio
    async def test_roles_from_disk(self, tmp_path, recording_runner_class, inventory):
        roles = tmp_path / "roles"
        write(roles / "common" / "tasks" / "main.yml", "- name: common setup\n  ping:\n")
        write(roles / "app" / "defaults" / "main.yml", "port: 80\n")
        write(roles / "app" / "meta" / "main.yml", "dependencies: [common]\n")
        write(roles / "app" / "tasks" / "main.yml", """
- name: configure app
  template:
    dest: /etc/app.conf
  notify: restart app
""")
        write(roles / "app" / "handlers" / "main.yml", """
- name: restart app
  service: name=app state=restarted
""")
        loader = PlaybookLoader(write(tmp_path / "site.yml", """
- name: Deploy
  hosts: web
  gather_facts: false
  roles:
    - role: app
      port: 8080
  tasks:
    - name: done
      debug:
        msg: "port {{ port }}"
"""))
        playbook = loader.load()

        def respond(task, host, variables, options):
            return TaskResult(host=host, task_name=task.name, changed=task.module == "template")

        recording = recording_runner_class(respond=respond)
        executor = PlaybookExecutor(
            recording, inventory, roles=RoleManager(loader=loader.role_loader),
        )
        results = await executor.execute(playbook)

        assert [c.task.name for c in recording.calls] == [
            "common setup", "configure app", "done", "restart app",
        ]
        configure = recording.calls[1]
        assert configure.variables["port"] == 8080
        assert configure.hosts == ["h1", "h2"]
        assert len(results) == 8
