"""Render the unattended answer document (autounattend.xml)."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Optional
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, register_namespace, tostring

from winprov.constants import UNATTEND_TEMPLATE_DIR
from winprov.exceptions import CatalogError, ConfigError, ImageCustomizationError
from winprov.models import TemplateVariables, VersionDescriptor
from winprov.utils import log

UNATTEND_NS = "urn:schemas-microsoft-com:unattend"
WCM_NS = "http://schemas.microsoft.com/WMIConfig/2002/State"
_NSMAP = {"u": UNATTEND_NS}
_IMAGE_NAME_KEY = "/IMAGE/NAME"


def _q(tag: str) -> str:
    return f"{{{UNATTEND_NS}}}{tag}"


def encode_password(password: str, suffix: str) -> str:
    """Obfuscate a password the way Windows Setup expects when PlainText is false."""
    return base64.b64encode((password + suffix).encode("utf-16-le")).decode("ascii")


def load_template(descriptor: VersionDescriptor, override: Optional[Path] = None) -> Optional[bytes]:
    """Return the answer template for ``descriptor``.

    An operator template wins. Editions without a built-in template yield
    ``None`` and are installed without an answer document.
    """
    if override is not None:
        if not override.is_file():
            raise ConfigError(f"UNATTEND_TEMPLATE not found: {override}")
        log("INFO", f"Using answer template {override}")
        return override.read_bytes()
    if not descriptor.template:
        return None
    path = UNATTEND_TEMPLATE_DIR / f"{descriptor.template}.xml"
    if not path.is_file():
        raise CatalogError(f"Answer template '{descriptor.template}' for {descriptor.canonical_key} is missing: {path}")
    return path.read_bytes()


def _set_text(parent: Element, path: str, value: str) -> bool:
    node = parent.find(path, _NSMAP)
    if node is None:
        return False
    node.text = value
    return True


def _child(parent: Element, tag: str) -> Element:
    node = parent.find(f"u:{tag}", _NSMAP)
    if node is None:
        node = SubElement(parent, _q(tag))
    return node


def _set_password(container: Optional[Element], value: str) -> None:
    if container is None:
        return
    _child(container, "Value").text = value
    _child(container, "PlainText").text = "false"


def _apply_locale(component: Element, variables: TemplateVariables) -> None:
    _set_text(component, "u:SetupUILanguage/u:UILanguage", variables.language)
    _set_text(component, "u:InputLocale", variables.keyboard)
    _set_text(component, "u:SystemLocale", variables.region)
    _set_text(component, "u:UILanguage", variables.language)
    _set_text(component, "u:UserLocale", variables.region)


def _apply_setup(component: Element, descriptor: VersionDescriptor, variables: TemplateVariables) -> None:
    user_data = component.find("u:UserData", _NSMAP)
    if user_data is not None:
        _set_text(user_data, "u:FullName", variables.username)
        key = variables.product_key or descriptor.setup_key
        product_key = user_data.find("u:ProductKey", _NSMAP)
        if key:
            if product_key is None:
                product_key = SubElement(user_data, _q("ProductKey"))
            _child(product_key, "Key").text = key
        elif product_key is not None:
            user_data.remove(product_key)

    if not descriptor.image_name:
        return
    os_image = component.find("u:ImageInstall/u:OSImage", _NSMAP)
    if os_image is None:
        return
    install_from = _child(os_image, "InstallFrom")
    for metadata in install_from.findall("u:MetaData", _NSMAP):
        key_node = metadata.find("u:Key", _NSMAP)
        if key_node is not None and (key_node.text or "").strip().upper() == _IMAGE_NAME_KEY:
            _child(metadata, "Value").text = descriptor.image_name
            return
    metadata = SubElement(install_from, _q("MetaData"), {f"{{{WCM_NS}}}action": "add"})
    SubElement(metadata, _q("Key")).text = _IMAGE_NAME_KEY
    SubElement(metadata, _q("Value")).text = descriptor.image_name


def _apply_shell(component: Element, variables: TemplateVariables) -> None:
    _set_text(component, "u:ComputerName", variables.computer_name)

    user_password = encode_password(variables.password, "Password")
    accounts = component.find("u:UserAccounts", _NSMAP)
    if accounts is not None:
        account = accounts.find("u:LocalAccounts/u:LocalAccount", _NSMAP)
        if account is not None:
            _child(account, "Name").text = variables.username
            _child(account, "DisplayName").text = variables.username
            _set_password(_child(account, "Password"), user_password)
        _set_password(
            accounts.find("u:AdministratorPassword", _NSMAP),
            encode_password(variables.password, "AdministratorPassword"),
        )

    autologon = component.find("u:AutoLogon", _NSMAP)
    if autologon is not None:
        _child(autologon, "Username").text = variables.username
        _set_password(_child(autologon, "Password"), user_password)


def render_answer(template: bytes, descriptor: VersionDescriptor, variables: TemplateVariables) -> bytes:
    """Fill ``template`` for ``descriptor`` and return the serialized document."""
    register_namespace("", UNATTEND_NS)
    register_namespace("wcm", WCM_NS)
    try:
        root = fromstring(template)
    except ParseError as exc:
        raise ImageCustomizationError("answer", f"answer template is not valid XML: {exc}")
    if root.tag != _q("unattend"):
        raise ImageCustomizationError("answer", f"answer template root must be <unattend> in {UNATTEND_NS}")

    arch = descriptor.architecture.processor_architecture
    for component in root.iter(_q("component")):
        component.set("processorArchitecture", arch)
        name = component.get("name", "")
        if name.startswith("Microsoft-Windows-International-Core"):
            _apply_locale(component, variables)
        elif name == "Microsoft-Windows-Setup":
            _apply_setup(component, descriptor, variables)
        elif name == "Microsoft-Windows-Shell-Setup":
            _apply_shell(component, variables)

    log("DEBUG", f"Rendered answer document for {descriptor.canonical_key} ({arch})")
    return tostring(root, encoding="utf-8", xml_declaration=True)
