"""Login template routes module."""

from typing import List

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import status

from warden.dependencies.auth import get_current_user
from warden.schemas.schemas import LoginTemplateOut
from warden.services.login_templates import LoginTemplate
from warden.services.login_templates import get_template
from warden.services.login_templates import list_templates

router = APIRouter(
    tags=["login-templates"],
    dependencies=[Depends(get_current_user)],
)


def _template_out(template: LoginTemplate) -> LoginTemplateOut:
    return LoginTemplateOut(
        id=template.id,
        name=template.name,
        description=template.description,
        login_url=template.login_url,
        steps=[step.model_dump(by_alias=True, exclude_none=True) for step in template.steps],
        fields=[field.model_dump() for field in template.fields],
        success_url_pattern=template.success_url_pattern,
        error_url_pattern=template.error_url_pattern,
    )


@router.get("", response_model=List[LoginTemplateOut])
def read_login_templates():
    """Named login scripts a login can reference through ``template_id``."""
    return [_template_out(template) for template in list_templates()]


@router.get("/{template_id}", response_model=LoginTemplateOut)
def read_login_template(template_id: str):
    template = get_template(template_id)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Login template not found")
    return _template_out(template)
