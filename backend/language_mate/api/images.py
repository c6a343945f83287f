from fastapi import APIRouter, Depends, HTTPException, Response, UploadFile

from language_mate.api.deps import Services, get_services
from language_mate.core.errors import InvalidImageError
from language_mate.core.sandbox import SandboxError

router = APIRouter()


@router.post("/")
async def upload_image(file: UploadFile, services: Services = Depends(get_services)):
    data = await file.read()
    try:
        attachment = services.image_storage.save_image(data, file.filename or "image")
    except InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return attachment.model_dump()


@router.get("/{image_id}")
async def get_image(image_id: str, services: Services = Depends(get_services)):
    try:
        attachment, data = services.image_storage.get_image(image_id)
    except SandboxError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Image not found")
    return Response(content=data, media_type=attachment.mime_type)


@router.delete("/{image_id}")
async def delete_image(image_id: str, services: Services = Depends(get_services)):
    try:
        deleted = services.image_storage.delete(image_id)
    except SandboxError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except FileNotFoundError:
        deleted = False
    if not deleted:
        raise HTTPException(status_code=404, detail="Image not found")
    return {"status": "deleted"}
