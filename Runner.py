# Runner.py
import logging

import pandas as pd

from broker import DatacenterBroker
from cloudlet import AppCloudlet, CloudletStatus, NetworkCloudlet
from distributions import ExponentialDistr
from Helper import FILE_SIZE, OUTPUT_SIZE, create_host_list, create_network, create_vm_list
from network_datacenter import NetworkDatacenter
from schedule import SchedulerVM
from simulation import Simulation

logger = logging.getLogger(__name__)


def create_tandem_app(app_id, user_id, first_cloudlet_id, exec_length=1000, data_size=1000):
    """
    Two-task workflow A ---> B: A computes then sends its result to B,
    B waits for the data then computes.
    """
    app = AppCloudlet(AppCloudlet.APP_WORKFLOW, app_id, deadline=2000, user_id=user_id)
    cla = app.add_cloudlet(NetworkCloudlet(first_cloudlet_id, 0, 1, FILE_SIZE, OUTPUT_SIZE))
    clb = app.add_cloudlet(NetworkCloudlet(first_cloudlet_id + 1, 0, 1, FILE_SIZE, OUTPUT_SIZE))

    cla.add_execution_stage(exec_length)
    cla.add_send_stage(data_size, clb)

    clb.add_recv_stage(cla)
    clb.add_execution_stage(exec_length)
    return app


def run_tandem_example(num_apps=2, num_hosts=4, num_vms=4, seed=5, mean_delay=1000):
    """
    :param num_apps: Number of tandem apps submitted by the broker
    :param seed: Seed of the inter-arrival distribution
    :param mean_delay: Mean inter-arrival delay of the apps
    :return: (list of returned cloudlets, bytes that crossed a switch)
    """
    sim = Simulation()
    hosts = create_host_list(num_hosts)
    datacenter = NetworkDatacenter(sim, "Datacenter_0", hosts,
                                   vm_allocation_policy=SchedulerVM(hosts, policy="most_free_pes"))
    create_network(datacenter, hosts)

    broker = DatacenterBroker(sim, "Broker", datacenter.id)
    broker.submit_guest_list(create_vm_list(num_vms, user_id=broker.id))

    distr = ExponentialDistr(mean_delay, seed=seed)
    next_id = 0
    for app_id in range(num_apps):
        app = create_tandem_app(app_id, broker.id, next_id)
        next_id += len(app.cloudlets)
        broker.submit_app_cloudlet(app, distr)

    print("Starting TandemAppExample...")
    end_time = sim.run()
    print(f"Simulation finished at {end_time:.2f}")

    received = broker.get_cloudlet_received_list()
    return received, datacenter.counter.total_bytes


def cloudlet_results_frame(cloudlets):
    rows = []
    for cloudlet in cloudlets:
        rows.append({
            "Cloudlet ID": cloudlet.cloudlet_id,
            "STATUS": cloudlet.status.name,
            "Data center ID": cloudlet.resource_id,
            "VM ID": cloudlet.guest_id,
            "Time": round(cloudlet.actual_cpu_time, 2),
            "Start Time": round(cloudlet.exec_start_time, 2) if cloudlet.exec_start_time is not None else None,
            "Finish Time": round(cloudlet.finish_time, 2) if cloudlet.finish_time is not None else None,
        })
    return pd.DataFrame(rows, columns=["Cloudlet ID", "STATUS", "Data center ID", "VM ID",
                                       "Time", "Start Time", "Finish Time"])


def print_cloudlet_list(cloudlets):
    frame = cloudlet_results_frame(cloudlets)
    print()
    print("========== OUTPUT ==========")
    if frame.empty:
        print("No cloudlets returned.")
        return frame
    print(frame.to_string(index=False))
    succeeded = (frame["STATUS"] == CloudletStatus.SUCCESS.name).sum()
    print(f"{succeeded}/{len(frame)} cloudlets succeeded")
    return frame


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    received, total_bytes = run_tandem_example()
    print_cloudlet_list(received)
    print(f"Total data transferred over the network: {total_bytes}")
    print("TandemAppExample finished!")
