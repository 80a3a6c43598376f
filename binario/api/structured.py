from __future__ import annotations

from fastapi import APIRouter, Depends

from binario.api.schemas import StructuredRequestIn
from binario.deps import get_gateway
from binario.gateway import Gateway
from binario.schema import Schema
from binario.structured import generate_structured

router = APIRouter(prefix="/v1", tags=["structured"])


@router.post("/structured")
async def structured_output(payload: StructuredRequestIn, gateway: Gateway = Depends(get_gateway)):
    schema = Schema.from_json_schema(payload.output_schema)
    result = await generate_structured(
        gateway,
        payload.to_messages(),
        schema,
        payload.to_options(),
        retries=payload.retries,
    )
    return {
        "data": result.data,
        "raw": result.raw,
        "attempts": result.attempts,
        "usage": result.usage.to_dict(),
        "provider": result.provider,
        "model": result.model,
    }
