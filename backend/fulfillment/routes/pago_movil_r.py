from fastapi import APIRouter

from fulfillment.services.pago_movil_s import list_banks

router = APIRouter()


@router.get("/pago-movil/banks")
def get_pago_movil_banks():
    return {"data": list_banks()}
