"""
Blueprint Registry - site templates resolved into concrete manifests.

A blueprint is a set of template files plus post-install commands.
Templates use ``{{placeholder}}`` substitution; commands only ever see
shell-quoted values (``{{name_q}}``).

Built-in blueprints:
- wp-starter: WordPress with the generated content imported as the home page
- static-landing: the generated page served as-is with a sandbox banner
"""

import hashlib
import hmac
import html
import json
import posixpath
import re
import shlex
from dataclasses import dataclass
from typing import Optional

from demoforge.config import Settings, get_settings
from demoforge.errors import ValidationError
from demoforge.models import PlannedFile, ProvisioningRequest, SiteManifest

PLACEHOLDER = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")


@dataclass(frozen=True)
class TemplateFile:
    """A file to render; ``path`` may itself contain placeholders."""
    path: str
    template: str
    mode: int = 0o644


@dataclass(frozen=True)
class Blueprint:
    id: str
    description: str
    files: tuple[TemplateFile, ...]
    post_install: tuple[str, ...] = ()
    banner: bool = False


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute every ``{{name}}``; an unknown name is a ValidationError."""
    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            raise ValidationError(f"unknown template placeholder: {key}")
        return values[key]

    return PLACEHOLDER.sub(replace, template)


def php_quote(value: str) -> str:
    """Escape for a single-quoted PHP string literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def inject_banner(page: str, site_title: str) -> str:
    """Insert the sandbox banner right after ``<body>``, or prepend it."""
    banner = (
        '<div style="background:#111;color:#fff;padding:8px;text-align:center;'
        'font:14px sans-serif">'
        f"Demo preview for {html.escape(site_title)}. Not the live site."
        "</div>"
    )
    match = re.search(r"<body[^>]*>", page, re.IGNORECASE)
    if match is None:
        return banner + "\n" + page
    return page[:match.end()] + "\n" + banner + page[match.end():]


# ============================================================================
# Built-in templates
# ============================================================================

FINGERPRINT_COMMENT = "<!-- demoforge:{{fingerprint}} -->\n"

WP_IMPORT_SCRIPT = """<?php
// Generated by demoforge; run with `wp eval-file`.
$html = file_get_contents(ABSPATH . 'demoforge/content.html');
$post = array(
    'post_title' => '{{site_title_php}}',
    'post_name' => 'home',
    'post_content' => $html,
    'post_status' => 'publish',
    'post_type' => 'page',
);
$page = get_page_by_path('home');
if ($page) {
    $post['ID'] = $page->ID;
    $id = wp_update_post($post, true);
} else {
    $id = wp_insert_post($post, true);
}
if (is_wp_error($id)) {
    fwrite(STDERR, $id->get_error_message());
    exit(1);
}
update_option('blogname', '{{site_title_php}}');
update_option('show_on_front', 'page');
update_option('page_on_front', $id);
echo "home page {$id}\\n";
"""

NGINX_SITE = """server {
    listen 80;
    server_name {{public_host}} {{domain}};
    root {{target_dir}};
    index index.php index.html;

    location / {
        try_files $uri $uri/ /index.php?$args;
    }

    location ~ \\.php$ {
        include fastcgi_params;
        fastcgi_pass unix:/run/php/php-fpm.sock;
        fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
    }

    location ^~ /demoforge/ {
        deny all;
    }
}
"""

WP_DATABASE_SQL = (
    "CREATE DATABASE IF NOT EXISTS `{{db_name}}`; "
    "CREATE USER IF NOT EXISTS '{{db_user}}'@'localhost' IDENTIFIED BY '{{db_password}}'; "
    "GRANT ALL PRIVILEGES ON `{{db_name}}`.* TO '{{db_user}}'@'localhost'; "
    "FLUSH PRIVILEGES;"
)

WP_DATABASE = "mysql -e {{db_setup_sql_q}}"

WP_INSTALL = (
    "cd {{target_dir_q}} && if [ ! -f wp-config.php ]; then "
    "wp core download --force{{wp_flags}}"
    " && wp config create --dbname={{db_name_q}} --dbuser={{db_user_q}} --dbpass={{db_password_q}}{{wp_flags}}"
    " && wp core install --url={{public_url_q}} --title={{site_title_q}}"
    " --admin_user=demoforge --admin_password={{db_password_q}}"
    " --admin_email={{admin_email_q}} --skip-email{{wp_flags}}"
    " && wp theme install twentytwentyfour --activate{{wp_flags}}; fi"
)

WP_IMPORT = "cd {{target_dir_q}} && wp eval-file demoforge/import.php{{wp_flags}}"

NGINX_RELOAD = "nginx -t && systemctl reload nginx"

ROBOTS_TXT = """User-agent: *
Disallow: /
Sitemap: {{public_url}}sitemap.xml
"""

SITEMAP_XML = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url>
    <loc>{{public_url}}</loc>
    <changefreq>weekly</changefreq>
    <priority>1.0</priority>
  </url>
</urlset>
"""

WP_STARTER = Blueprint(
    id="wp-starter",
    description="WordPress site with the generated page imported as the front page",
    files=(
        TemplateFile("demoforge/content.html", FINGERPRINT_COMMENT + "{{content}}\n"),
        TemplateFile("demoforge/import.php", WP_IMPORT_SCRIPT, mode=0o640),
        TemplateFile("demoforge/deploy.json", "{{deploy_json}}\n"),
    ),
    post_install=(WP_DATABASE, WP_INSTALL, WP_IMPORT),
)

STATIC_LANDING = Blueprint(
    id="static-landing",
    description="Generated page served as static HTML",
    files=(
        TemplateFile("index.html", FINGERPRINT_COMMENT + "{{content}}\n"),
        TemplateFile("robots.txt", ROBOTS_TXT),
        TemplateFile("sitemap.xml", SITEMAP_XML),
    ),
    banner=True,
)

DEFAULT_BLUEPRINTS = (WP_STARTER, STATIC_LANDING)


class BlueprintRegistry:
    """Lookup and rendering of blueprints by id."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        blueprints: Optional[tuple[Blueprint, ...]] = None,
    ):
        self.settings = settings or get_settings()
        self._blueprints = {b.id: b for b in (blueprints or DEFAULT_BLUEPRINTS)}

    def ids(self) -> list[str]:
        return sorted(self._blueprints)

    def get(self, blueprint_id: str) -> Blueprint:
        try:
            return self._blueprints[blueprint_id]
        except KeyError:
            raise ValidationError(
                f"unknown blueprint {blueprint_id!r}; expected one of {', '.join(self.ids())}",
            ) from None

    def render(
        self,
        request: ProvisioningRequest,
        *,
        public_host: str,
        site_title: str,
        fingerprint: str,
    ) -> SiteManifest:
        """
        Resolve ``request.blueprint_id`` into the files and commands for one site.

        Rendering is a pure function of its inputs, so re-rendering the same
        job yields byte-identical files.
        """
        blueprint = self.get(request.blueprint_id)
        public_url = f"{self.settings.public_url_scheme}://{public_host}/"
        target_dir = posixpath.join(self.settings.site_root, public_host)

        content = request.html_content
        if blueprint.banner:
            content = inject_banner(content, site_title)

        values = self._values(
            request,
            blueprint=blueprint,
            public_host=public_host,
            public_url=public_url,
            target_dir=target_dir,
            site_title=site_title,
            fingerprint=fingerprint,
            content=content,
        )

        files = [
            PlannedFile(
                path=render_template(f.path, values),
                content=render_template(f.template, values),
                mode=f.mode,
            )
            for f in blueprint.files
        ]
        post_install = [render_template(c, values) for c in blueprint.post_install]

        # WordPress needs a PHP-aware vhost; static sites are served by the package default
        if blueprint.post_install and self.settings.nginx_conf_dir:
            files.append(PlannedFile(
                path=posixpath.join(self.settings.nginx_conf_dir, f"{public_host}.conf"),
                content=render_template(NGINX_SITE, values),
            ))
            post_install.append(NGINX_RELOAD)

        return SiteManifest(
            public_host=public_host,
            public_url=public_url,
            target_dir=target_dir,
            files=files,
            post_install=post_install,
            success_indicator=fingerprint,
        )

    def db_password(self, client_slug: str) -> str:
        """Deterministic per-site secret, stable across redeploys."""
        digest = hmac.new(
            self.settings.secret_key.encode("utf-8"),
            client_slug.encode("utf-8"),
            hashlib.sha256,
        )
        return digest.hexdigest()[:24]

    def _values(
        self,
        request: ProvisioningRequest,
        *,
        blueprint: Blueprint,
        public_host: str,
        public_url: str,
        target_dir: str,
        site_title: str,
        fingerprint: str,
        content: str,
    ) -> dict[str, str]:
        deploy_json = json.dumps(
            {
                "blueprint": blueprint.id,
                "client_id": request.client_id,
                "client_slug": request.client_slug,
                "domain": request.domain,
                "public_host": public_host,
                "fingerprint": fingerprint,
            },
            indent=2,
            sort_keys=True,
        )
        values = {
            "public_host": public_host,
            "public_url": public_url,
            "target_dir": target_dir,
            "domain": request.domain,
            "client_slug": request.client_slug,
            "site_title": site_title,
            "site_title_php": php_quote(site_title),
            "fingerprint": fingerprint,
            "content": content,
            "deploy_json": deploy_json,
            "db_name": ("wp_" + request.client_slug.replace("-", "_"))[:64],
            # MySQL user names are limited to 32 characters
            "db_user": ("wp_" + request.client_slug.replace("-", "_"))[:32],
            "db_password": self.db_password(request.client_slug),
            "wp_flags": " --allow-root" if self.settings.wp_allow_root else "",
            "admin_email": f"admin@{request.domain}",
        }
        values["db_setup_sql"] = render_template(WP_DATABASE_SQL, values)
        quoted = (
            "target_dir", "db_name", "db_user", "db_password", "db_setup_sql",
            "public_url", "site_title", "admin_email",
        )
        for key in quoted:
            values[f"{key}_q"] = shlex.quote(values[key])
        return values
