import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from fastapi import FastAPI, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field, field_serializer
from sqlalchemy import or_, select
from sqlalchemy.orm import Session
from common.auth import get_current_user_id
from common.authorization import authorize
from common.error_handling import ErrorCodes, NotFound, add_error_handlers
from common.health import health_router
from common.settings import settings
from common.tracing import contract_tracer, tracing_middleware
from contract_service.db import engine, get_db, init_db
from contract_service.models import Contract, ContractStatus

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield

app = FastAPI(title="Contract Service", version=settings.service_version, lifespan=lifespan)
add_error_handlers(app)
app.include_router(health_router("contract-service", engine))

@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, contract_tracer)

class CreateContract(BaseModel):
    seller_id: str = Field(min_length=1, max_length=64)
    buyer_id: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    status: ContractStatus = ContractStatus.DRAFT

class UpdateContract(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    status: Optional[ContractStatus] = None

class ContractOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    seller_id: str
    buyer_id: str
    title: str
    amount: Decimal
    status: ContractStatus
    created_at: datetime
    updated_at: datetime

    @field_serializer("amount")
    def _money(self, value: Decimal) -> str:
        return f"{value:.2f}"

def is_contract_party(contract: Contract, user_id: str) -> bool:
    return user_id in (contract.seller_id, contract.buyer_id)

def load_contract(db: Session, contract_id: str) -> Contract:
    contract = db.get(Contract, contract_id)
    if contract is None:
        raise NotFound("Contract not found", code=ErrorCodes.CONTRACT_NOT_FOUND)
    return contract

@app.post("/contracts", response_model=ContractOut, status_code=201)
def create_contract(req: CreateContract, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    contract = Contract(**req.model_dump())
    authorize(contract, user_id, is_contract_party, "create")
    db.add(contract)
    db.commit()
    logger.info("Contract created", extra={"contract_id": contract.id})
    return contract

@app.get("/contracts/user/me", response_model=List[ContractOut])
def my_contracts(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    stmt = (
        select(Contract)
        .where(or_(Contract.seller_id == user_id, Contract.buyer_id == user_id))
        .order_by(Contract.created_at.desc())
    )
    return db.execute(stmt).scalars().all()

@app.get("/contracts/{contract_id}", response_model=ContractOut)
def get_contract(contract_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return authorize(load_contract(db, contract_id), user_id, is_contract_party, "view")

@app.patch("/contracts/{contract_id}", response_model=ContractOut)
def update_contract(
    contract_id: str,
    req: UpdateContract,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    contract = authorize(load_contract(db, contract_id), user_id, is_contract_party, "update")
    for field, value in req.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(contract, field, value)
    db.commit()
    return contract

@app.delete("/contracts/{contract_id}", status_code=204)
def delete_contract(contract_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    contract = authorize(load_contract(db, contract_id), user_id, is_contract_party, "delete")
    db.delete(contract)
    db.commit()
    logger.info("Contract deleted", extra={"contract_id": contract_id})
    return Response(status_code=204)
