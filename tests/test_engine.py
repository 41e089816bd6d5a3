"""Tests for the kernel, the Pug engine options and view rendering."""

import logging
import os
import re

import pytest

from jinja2 import TemplateNotFound

from pugbicchiere import (
    Container,
    ForbiddenParameterError,
    InvalidOptionError,
    Kernel,
    PugBicchiereError,
    PugTemplateEngine,
    Token,
    ViewEnvironment,
    cache_templates,
)


class CustomHelper:
    def foo(self):
        return "bar"


@pytest.fixture
def engine(kernel):
    return PugTemplateEngine(kernel)


@pytest.fixture
def pypugjs():
    return pytest.importorskip("pypugjs")


class TestContainer:
    def test_services(self):
        services = Container()
        services.set("mailer", "smtp")
        assert services.has("mailer")
        assert services.get("mailer") == "smtp"

    def test_missing_service(self):
        with pytest.raises(KeyError):
            Container().get("mailer")


class TestKernel:
    def test_directories(self, kernel, project):
        assert kernel.get_project_dir() == str(project)
        assert kernel.get_root_dir() == os.path.join(str(project), "app")
        assert kernel.get_src_dir() == os.path.join(str(project), "src")
        assert kernel.get_web_dir() == os.path.join(str(project), "static")
        assert kernel.get_cache_dir() == os.path.join(str(project), "var", "cache", "test")

    def test_bundles_discovered(self, kernel, project):
        assert sorted(kernel.bundles) == ["AOtherBundle", "TestBundle"]
        assert kernel.get_bundle("TestBundle") == os.path.join(str(project), "src", "TestBundle")
        assert kernel.get_bundle("README.txt") is None

    def test_explicit_bundles(self, project):
        kernel = Kernel(project, bundles={"Blog": project / "src" / "TestBundle"})
        assert list(kernel.bundles) == ["Blog"]

    def test_default_services(self, kernel):
        services = kernel.get_container()
        for service_id in ("request_stack", "router", "router.request_context",
                           "security.token_storage", "security.csrf.token_manager",
                           "templating.helper.assets", "templating.helper.router"):
            assert services.has(service_id)

    def test_given_services_kept(self, project):
        services = Container()
        services.set("templating.helper.assets", None)
        kernel = Kernel(project, container=services)
        assert kernel.get_container().get("templating.helper.assets") is None

    def test_config(self, project):
        kernel = Kernel(project, config={"app_directory": "application"})
        assert kernel.get_root_dir() == os.path.join(str(project), "application")
        assert kernel.config.templates_directory == "templates"


class TestOptions:
    def test_defaults(self, engine, kernel, project):
        assert engine.get_option("environment") == "test"
        assert engine.get_option("expression_language") == "js"
        assert engine.get_option("prettyprint") is False
        assert engine.get_option("cache") == os.path.join(kernel.get_cache_dir(), "pug")
        assert os.path.isdir(engine.get_option("cache"))
        assert engine.get_option("output_directory") == os.path.join(str(project), "static")
        assert engine.get_option("pre_render") == engine.pre_render

    def test_invalid_option(self, engine):
        with pytest.raises(InvalidOptionError, match="^foo is not a valid option name.$"):
            engine.get_option("foo")
        with pytest.raises(ValueError):
            engine.set_option("foo", 1)
        with pytest.raises(PugBicchiereError):
            engine.set_options({"prettyprint": True, "foo": 1})
        assert engine.get_option("prettyprint") is False

    def test_set_options(self, engine):
        engine.set_option("prettyprint", True)
        assert engine.get_option("prettyprint") is True
        engine.set_options({"expression_language": "php", "extension": ".jade"})
        assert engine.get_option("expression_language") == "php"
        assert engine.get_extensions() == (".jade",)

    def test_custom_options(self, engine):
        engine.set_custom_options({"foo": "bar"})
        assert engine.get_option("foo") == "bar"

    def test_dev_environment_not_cached(self, project):
        engine = PugTemplateEngine(Kernel(project, environment="dev"))
        assert engine.get_option("cache") is False

    def test_debug_log(self, project, caplog):
        with caplog.at_level(logging.DEBUG, logger="PugBicchiere"):
            PugTemplateEngine(Kernel(project, environment="dev", debug=True))
        assert "cache: disabled" in caplog.text


class TestDirectories:
    def test_base_dir_first_bundle_with_views(self, engine, project):
        assert engine.get_option("base_dir") == os.path.join(str(project), "src", "TestBundle", "templates")

    def test_asset_directories(self, engine, project):
        assert engine.get_option("asset_directory") == [
            os.path.join(str(project), "app", "assets"),
            os.path.join(str(project), "src", "AOtherBundle", "assets"),
            os.path.join(str(project), "src", "TestBundle", "assets"),
        ]

    def test_base_dir_fallback(self, tmp_path):
        (tmp_path / "app" / "templates").mkdir(parents=True)
        engine = PugTemplateEngine(Kernel(tmp_path))
        assert engine.get_option("base_dir") == os.path.join(str(tmp_path), "app", "templates")
        assert engine.get_option("asset_directory") == [os.path.join(str(tmp_path), "app", "assets")]

    def test_file_from_name(self, engine, project):
        root = str(project)
        assert engine.get_file_from_name("p.pug") == os.path.join(root, "app", "templates", "p.pug")
        assert engine.get_file_from_name("TestBundle::bundle.pug") == os.path.join(
            root, "src", "TestBundle", "templates", "bundle.pug")
        assert engine.get_file_from_name("TestBundle:directory:file.pug") == os.path.join(
            root, "src", "TestBundle", "templates", "directory", "file.pug")
        assert engine.get_file_from_name("Missing::p.pug") == os.path.join(root, "app", "templates", "p.pug")

    def test_exists(self, engine):
        assert engine.exists("p.pug")
        assert engine.exists("TestBundle:directory:file.pug")
        assert not engine.exists("nope.pug")

    def test_supports(self, engine):
        assert engine.supports("p.pug")
        assert engine.supports("p.jade")
        assert not engine.supports("p.html")


class TestHelpers:
    def test_registered(self, engine):
        for name in ("assets", "css", "form", "http", "logout", "logout_url",
                     "request", "router", "security", "session"):
            assert name in engine
        assert engine["logout"] is engine["logout_url"]
        assert len(engine) == 10
        assert "translator" not in engine

    def test_custom_helper(self, kernel):
        helper = CustomHelper()
        engine = PugTemplateEngine(kernel, helper)
        assert engine["custom"] is helper
        del engine["custom"]
        assert "custom" not in engine
        engine["custom"] = helper
        assert "custom" in list(engine)

    def test_missing_helper(self, engine):
        with pytest.raises(KeyError):
            engine["custom"]

    def test_app_shared(self, engine):
        assert engine.globals["app"].environment == "test"

    def test_filters(self, engine):
        def shout(value):
            return f"{value.upper()}!"

        assert not engine.has_filter("shout")
        engine.filter("shout", shout)
        assert engine.has_filter("shout")
        assert engine.get_filter("shout") is shout


class TestPreRender:
    def test_js(self, engine):
        assert engine.pre_render('p=asset("foo")') == 'p=view.assets.getUrl("foo")'

    def test_php(self, engine):
        engine.set_option("expression_language", "php")
        assert engine.pre_render('p=asset("foo")') == "p=$view['assets']->getUrl(\"foo\")"


class TestRender:
    @pytest.mark.parametrize("key", ["view", "this"])
    def test_forbidden_parameters(self, engine, key):
        with pytest.raises(ForbiddenParameterError, match=f'The "{key}" key is forbidden.'):
            engine.render("p.pug", {key: 42})

    def test_simple(self, engine, pypugjs):
        assert engine.render("p.pug").strip() == "<div><p></p></div>"

    def test_bundle_views(self, engine, pypugjs):
        assert engine.render("TestBundle::bundle.pug", {"text": "Hello"}).strip() == "<p>Hello</p>"
        assert engine.render("TestBundle:directory:file.pug").strip() == "<section>World</section>"

    def test_user(self, engine, kernel, pypugjs):
        storage = kernel.get_container().get("security.token_storage")
        storage.set_token(Token("ernesto", ["ROLE_USER"]))
        assert engine.render("token.pug").strip() == "<p>ernesto</p>"
        assert engine.render("granted.pug").strip() == "<p>True</p>"

    def test_not_granted(self, engine, pypugjs):
        assert engine.render("granted.pug").strip() == "<p>False</p>"

    def test_custom_helper(self, kernel, pypugjs):
        assert PugTemplateEngine(kernel).render("custom-helper.pug").strip() == "<s>Noop</s>"
        engine = PugTemplateEngine(kernel, CustomHelper())
        assert engine.render("custom-helper.pug").strip() == "<u>bar</u>"

    def test_asset(self, engine, pypugjs):
        assert engine.render("asset.pug").strip() == "<p>/static/img/logo.png</p>"

    def test_route(self, engine, pypugjs):
        assert engine.render("route.pug").strip() == "<p>/hello/world</p>"

    def test_logout(self, engine, pypugjs):
        assert engine.render("logout.pug").strip() == '<a href="/logout">Logout</a>'

    def test_literal_untouched(self, engine, pypugjs):
        assert engine.render("literal.pug").strip() == "<p>asset(1)</p>"

    def test_random(self, engine, pypugjs):
        assert engine.render("random.pug").strip() == "<p>1</p>"

    def test_csrf_token(self, engine, kernel, make_environ, pypugjs):
        stack = kernel.get_container().get("request_stack")
        with stack.request(make_environ()) as request:
            output = engine.render("csrf.pug").strip()
            assert output == f"<p>{request.session['_csrf/form']}</p>"
        assert re.match(r"^<p>[0-9a-f]{64}</p>$", output)

    def test_filter(self, engine, project, pypugjs):
        (project / "app" / "templates" / "shout.pug").write_text("p= text|shout\n")
        engine.filter("shout", lambda value: f"{value.upper()}!")
        assert engine.render("shout.pug", {"text": "hi"}).strip() == "<p>HI!</p>"

    def test_include(self, engine, project, pypugjs):
        views = project / "app" / "templates"
        (views / "page.pug").write_text("div\n  include partial.pug\n")
        (views / "partial.pug").write_text("span Included\n")
        assert engine.render("page.pug").strip() == "<div><span>Included</span></div>"

    def test_included_helper_calls(self, engine, project, pypugjs):
        views = project / "app" / "templates"
        (views / "partials").mkdir()
        (views / "partials" / "asset.pug").write_text('p= asset("x.png")\n')
        (views / "page.pug").write_text("div\n  include partials/asset.pug\n")
        assert engine.render("page.pug").strip() == "<div><p>/static/x.png</p></div>"

    def test_missing_include(self, engine, project, pypugjs):
        (project / "app" / "templates" / "page.pug").write_text("div\n  include nowhere.pug\n")
        with pytest.raises(TemplateNotFound):
            engine.render("page.pug")

    def test_extends_next_to_view(self, engine, project, pypugjs):
        app_views = project / "app" / "templates"
        bundle_views = project / "src" / "TestBundle" / "templates"
        (app_views / "layout2.pug").write_text("main\n  block content\n")
        (bundle_views / "layout2.pug").write_text("aside\n  block content\n")
        page = "extends layout2.pug\nblock content\n  p hi\n"
        (app_views / "p2.pug").write_text(page)
        (bundle_views / "p2.pug").write_text(page)
        assert engine.render("p2.pug").strip() == "<main><p>hi</p></main>"
        assert engine.render("TestBundle::p2.pug").strip() == "<aside><p>hi</p></aside>"

    def test_cache_follows_compile_options(self, kernel, pypugjs):
        compact = PugTemplateEngine(kernel).render("p.pug")
        engine = PugTemplateEngine(kernel)
        engine.set_option("prettyprint", True)
        assert compact.strip() == "<div><p></p></div>"
        assert engine.render("p.pug").strip() == "<div>\n  <p></p>\n</div>"
        assert len(os.listdir(engine.get_option("cache"))) == 2

    def test_options_reset_environment(self, engine, pypugjs):
        environment = engine.get_engine()
        assert engine.get_engine() is environment
        engine.set_option("prettyprint", True)
        assert engine.get_engine() is not environment


class TestCacheTemplates:
    def test_cache_templates(self, engine, project, pypugjs):
        directories, success, errors = cache_templates(engine)
        assert directories == [
            os.path.join(str(project), "app", "templates"),
            os.path.join(str(project), "src", "TestBundle", "templates"),
        ]
        assert success == 12
        assert errors == 0
        cached = os.listdir(engine.get_option("cache"))
        assert len(cached) == 12
        assert all(re.match(r"^__pug_js_\w+\.cache$", name) for name in cached)

    def test_broken_view(self, engine, project, pypugjs, caplog):
        (project / "app" / "templates" / "broken.pug").write_text("p= foo(\n")
        with caplog.at_level(logging.ERROR, logger="PugBicchiere"):
            directories, success, errors = cache_templates(engine)
        assert (success, errors) == (12, 1)
        assert "broken.pug could not be cached" in caplog.text


class TestViewEnvironment:
    def test_sibling_views_first(self, project):
        environment = ViewEnvironment()
        views = project / "app" / "templates"
        parent = str(views / "p.pug")
        assert environment.join_path("token.pug", parent) == str(views / "token.pug")
        assert environment.join_path("bundle.pug", parent) == "bundle.pug"
        assert environment.join_path("token.pug", "p.pug") == "token.pug"

    def test_cache_pattern(self, engine):
        pattern = engine.get_cache_pattern()
        assert re.match(r"^__pug_js_[0-9a-f]{8}_%s\.cache$", pattern)
        engine.set_option("prettyprint", True)
        assert engine.get_cache_pattern() != pattern
        engine.set_option("prettyprint", False)
        assert engine.get_cache_pattern() == pattern
